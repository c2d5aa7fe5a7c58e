from lifecycle.state_machine import QueueStateMachine, TransitionResult, TRANSITIONS

__all__ = ["QueueStateMachine", "TransitionResult", "TRANSITIONS"]
