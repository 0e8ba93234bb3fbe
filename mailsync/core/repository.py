"""Persistence contract consumed by the sync engine.

The engine never talks to a database directly: the sync state store, index
writer, content cache, real-time manager and learning pipeline all go through
a :class:`SyncRepository`. Each method is a single atomic operation on the
backing store; the compare-and-swap semantics of the lock and mode-switch
methods are part of the contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from mailsync.email.models import (
    Account,
    FolderCursor,
    LearningJob,
    MessageBody,
    MessageIndexEntry,
    ProviderKind,
)


class SyncRepository(ABC):
    """Keyed read/write/upsert access to accounts, cursors, index, cache and jobs."""

    # ------------------------------------------------------------------
    # Accounts
    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]:
        """Return the account or ``None``."""

    @abstractmethod
    def list_accounts(self, active_only: bool = True) -> List[Account]:
        """Return configured accounts, optionally only active ones."""

    @abstractmethod
    def update_account(self, account_id: str, updates: Dict[str, Any]) -> None:
        """Apply ``updates`` (field name -> value) to an account."""

    @abstractmethod
    def update_account_if(
        self, account_id: str, expected: Dict[str, Any], updates: Dict[str, Any]
    ) -> bool:
        """Apply ``updates`` only if every field in ``expected`` still matches.

        Returns ``True`` when the update was applied.
        """

    @abstractmethod
    def find_account_by_subscription(self, subscription_id: str) -> Optional[Account]:
        """Return the account owning a push subscription."""

    @abstractmethod
    def find_account_by_address(self, provider: ProviderKind, email_address: str) -> Optional[Account]:
        """Return the account for a provider mailbox address."""

    # ------------------------------------------------------------------
    # Folder cursors and locks
    @abstractmethod
    def get_cursor(self, account_id: str, folder: str) -> Optional[FolderCursor]:
        """Return the cursor row or ``None`` when the folder was never synced."""

    @abstractmethod
    def try_lock(
        self, account_id: str, folder: str, owner: str, now: datetime, stale_before: datetime
    ) -> bool:
        """Atomically mark the pair in progress.

        Succeeds when no sync is in progress or the current lock was last
        refreshed before ``stale_before``. Creates the row when missing.
        """

    @abstractmethod
    def refresh_lock(self, account_id: str, folder: str, owner: str, now: datetime) -> bool:
        """Move ``locked_at`` forward if ``owner`` still holds the lock."""

    @abstractmethod
    def release_lock(self, account_id: str, folder: str, owner: str) -> bool:
        """Clear the lock if ``owner`` still holds it."""

    @abstractmethod
    def set_cursor(self, account_id: str, folder: str, cursor: Optional[str], now: datetime) -> None:
        """Persist the cursor for the pair."""

    # ------------------------------------------------------------------
    # Message index
    @abstractmethod
    def insert_index_entries(self, entries: Iterable[MessageIndexEntry]) -> List[str]:
        """Insert entries, ignoring existing (account_id, message_id) keys.

        Returns the message ids that were actually inserted.
        """

    @abstractmethod
    def get_index_entry(self, account_id: str, message_id: str) -> Optional[MessageIndexEntry]:
        """Return one index entry."""

    @abstractmethod
    def select_for_learning(
        self,
        account_id: str,
        *,
        include_analyzed: bool,
        since: Optional[datetime],
        limit: int,
    ) -> List[MessageIndexEntry]:
        """Return index entries to analyze, newest first."""

    @abstractmethod
    def count_analyzed(self, account_id: str, since: Optional[datetime]) -> int:
        """Count entries that already carry ``analyzed_at``."""

    @abstractmethod
    def mark_analyzed(self, account_id: str, message_ids: Iterable[str], now: datetime) -> None:
        """Stamp ``analyzed_at`` on the given entries."""

    # ------------------------------------------------------------------
    # Content cache
    @abstractmethod
    def get_content(self, account_id: str, message_id: str) -> Optional[MessageBody]:
        """Return the cached body or ``None``."""

    @abstractmethod
    def put_content(self, body: MessageBody) -> bool:
        """Store a body unless one is already cached. Returns ``True`` if stored."""

    # ------------------------------------------------------------------
    # Learning jobs
    @abstractmethod
    def create_job(self, job: LearningJob) -> None:
        """Persist a new job."""

    @abstractmethod
    def save_job(self, job: LearningJob) -> None:
        """Persist the job's current counters and state."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[LearningJob]:
        """Return a job or ``None``."""

    @abstractmethod
    def find_active_job(self, user_id: str, account_id: str) -> Optional[LearningJob]:
        """Return a queued or running job for the pair."""

    @abstractmethod
    def save_learning_result(
        self, account_id: str, user_id: str, message_id: str, patterns: Dict[str, Any], now: datetime
    ) -> None:
        """Store the patterns extracted from one message."""
