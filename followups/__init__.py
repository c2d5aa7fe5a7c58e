"""
Follow-up queue — the Queue Store and its in-process collaborators.

Quick start:
  from followups import build_engine
  engine = build_engine(settings)
  item_id = await engine.queue.add({"email_id": "m-1", "priority": "high"})
"""
from followups.cache import QueueCache
from followups.locks import ItemLockRegistry
from followups.queue_store import QueueStore
from followups.bootstrap import FollowUpEngine, build_engine

__all__ = [
    "QueueCache", "ItemLockRegistry", "QueueStore",
    "FollowUpEngine", "build_engine",
]
