from inbox.connector import (
    MailboxConnector, RestMailboxConnector, InMemoryMailbox, create_mailbox_connector,
)

__all__ = [
    "MailboxConnector", "RestMailboxConnector", "InMemoryMailbox", "create_mailbox_connector",
]
