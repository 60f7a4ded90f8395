from mailbox_sync.db.engine import Database
from mailbox_sync.db.models import (
    Attachment,
    Base,
    Conversation,
    MailCredential,
    Message,
    ProviderSetting,
    SyncState,
)

__all__ = [
    "Attachment",
    "Base",
    "Conversation",
    "Database",
    "MailCredential",
    "Message",
    "ProviderSetting",
    "SyncState",
]
