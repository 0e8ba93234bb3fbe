"""Base abstract email connector class.

This module provides the abstract :class:`EmailConnector` base class that defines
the interface all provider connectors implement. Connectors only read from the
provider; writing to the index is the orchestrator's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

from ..errors import SubscriptionError
from ..models import Account, MessageBody, MessageIndexEntry, MessagePage, Subscription

if TYPE_CHECKING:
    from ..credentials import CredentialProvider


class EmailConnector(ABC):
    """Abstract base class for provider connectors.

    Parameters
    ----------
    credentials:
        Credential provider queried before every provider call.
    timeout:
        Per request timeout in seconds.
    """

    provider_name = "base"
    default_folder = "INBOX"
    supports_folders = True
    supports_delta = True
    supports_push = False

    def __init__(self, credentials: "CredentialProvider", *, timeout: float = 30.0) -> None:
        self.credentials = credentials
        self.timeout = timeout

    # ------------------------------------------------------------------
    @abstractmethod
    def fetch_page(
        self,
        account: Account,
        folder: str,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> MessagePage:
        """Fetch one page of message metadata.

        Parameters
        ----------
        account:
            Account being synced.
        folder:
            Provider folder identifier.
        cursor:
            Cursor persisted by the last successful sync, ``None`` for a full sync.
        page_token:
            Token returned as ``next_page_token`` by the previous page of this run.
        page_size:
            Upper bound on messages per page.
        """

    @abstractmethod
    def fetch_body(self, account: Account, message_id: str, folder: Optional[str] = None) -> MessageBody:
        """Fetch the full body of one message."""

    # ------------------------------------------------------------------
    def list_messages(
        self,
        account: Account,
        folder: str,
        since_cursor: Optional[str],
        max_messages: Optional[int] = None,
        page_size: int = 100,
    ) -> Tuple[List[MessageIndexEntry], Optional[str]]:
        """Collect every page since ``since_cursor``.

        Returns the messages and the cursor to persist afterwards. When
        ``max_messages`` stops the walk early, the returned cursor is the
        last page checkpoint (or the input cursor when the provider has none).
        """
        messages: List[MessageIndexEntry] = []
        page_token: Optional[str] = None
        new_cursor: Optional[str] = since_cursor
        while True:
            size = page_size
            if max_messages is not None:
                size = max(1, min(page_size, max_messages - len(messages)))
            page = self.fetch_page(account, folder, since_cursor, page_token, size)
            messages.extend(page.messages)
            if max_messages is not None and len(messages) >= max_messages and page.next_page_token:
                return messages, page.checkpoint or since_cursor
            if page.new_cursor is not None:
                new_cursor = page.new_cursor
            page_token = page.next_page_token
            if not page_token:
                return messages, new_cursor

    # ------------------------------------------------------------------
    def subscribe(
        self,
        account: Account,
        folder: str,
        notification_url: Optional[str],
        client_state: str,
        expires_at: datetime,
    ) -> Subscription:
        """Create a push subscription for ``folder``."""
        raise SubscriptionError(f"{self.provider_name} does not support push notifications")

    def renew(self, account: Account, subscription: Subscription, expires_at: datetime) -> Subscription:
        """Extend an existing subscription."""
        raise SubscriptionError(f"{self.provider_name} does not support push notifications")

    def unsubscribe(self, account: Account, subscription_id: str) -> None:
        """Delete a subscription; missing subscriptions are not an error."""
        raise SubscriptionError(f"{self.provider_name} does not support push notifications")

    def _credential(self, account: Account) -> Any:
        return self.credentials.get_credential(account)
