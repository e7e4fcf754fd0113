from mailhub.client.engine_client import MailClient
from mailhub.client.mailbox import MailboxView
from mailhub.client.query_cache import (
    MutationCoordinator,
    MutationState,
    QueryCache,
    list_key,
    thread_key,
)

__all__ = [
    "MailClient",
    "MailboxView",
    "MutationCoordinator",
    "MutationState",
    "QueryCache",
    "list_key",
    "thread_key",
]
