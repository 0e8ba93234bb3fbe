"""Email synchronization components.

- EmailConnector variants: Provider-specific paging, bodies and push subscriptions
- SyncStateStore: Per-folder cursor and in-progress lock
- IndexWriter: Idempotent metadata writes keyed by (account_id, message_id)
- ContentCache: Lazily hydrated message bodies
- SyncOrchestrator: One algorithm for full and delta syncs
"""

from .connectors import EmailConnector, GmailConnector, GraphConnector, IMAPConnector, build_connector
from .content_cache import ContentCache
from .credentials import CredentialProvider, StoredCredentialProvider
from .index_writer import IndexWriter
from .orchestrator import SyncOrchestrator, describe_health
from .sync_state import SyncStateStore

__all__ = [
    "EmailConnector",
    "IMAPConnector",
    "GmailConnector",
    "GraphConnector",
    "build_connector",
    "ContentCache",
    "CredentialProvider",
    "StoredCredentialProvider",
    "IndexWriter",
    "SyncOrchestrator",
    "SyncStateStore",
    "describe_health",
]
