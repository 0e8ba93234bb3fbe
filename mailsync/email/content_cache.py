"""
Lazy store for message bodies.

Sync only writes metadata; bodies are fetched from the provider the first
time a reader asks for them and kept afterwards. A miss is a normal outcome.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from mailsync.core.repository import SyncRepository

from .connectors.base import EmailConnector
from .models import Account, MessageBody
from .utils import utcnow

logger = logging.getLogger(__name__)


class ContentCache:
    """Body cache keyed by (account_id, message_id)."""

    def __init__(
        self,
        repository: SyncRepository,
        connector_for: Optional[Callable[[Account], EmailConnector]] = None,
    ) -> None:
        self.repository = repository
        self.connector_for = connector_for

    def get(self, account_id: str, message_id: str) -> Optional[MessageBody]:
        """Return the cached body, or ``None`` on a miss."""
        return self.repository.get_content(account_id, message_id)

    def put(self, account_id: str, message_id: str, body: MessageBody) -> None:
        """Store a body; an existing entry is kept."""
        if body.account_id != account_id or body.message_id != message_id:
            body = MessageBody(
                account_id=account_id,
                message_id=message_id,
                text=body.text,
                html=body.html,
                fetched_at=body.fetched_at,
            )
        if body.fetched_at is None:
            body.fetched_at = utcnow()
        if not self.repository.put_content(body):
            logger.debug("Body for %s/%s already cached", account_id, message_id)

    def hydrate(self, account: Account, message_id: str, folder: Optional[str] = None) -> MessageBody:
        """Return the body, fetching it from the provider on a miss."""
        cached = self.get(account.id, message_id)
        if cached is not None:
            return cached
        if self.connector_for is None:
            raise RuntimeError("ContentCache has no connector factory for hydration")
        if folder is None:
            entry = self.repository.get_index_entry(account.id, message_id)
            folder = entry.folder if entry else None
        body = self.connector_for(account).fetch_body(account, message_id, folder=folder)
        self.put(account.id, message_id, body)
        logger.debug("Hydrated body for %s/%s", account.id, message_id)
        # Another reader may have stored first; return the stored copy
        return self.get(account.id, message_id) or body
