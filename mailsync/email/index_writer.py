"""
Deduplicating writer for the message index.

Inserts are idempotent on (account_id, message_id): replaying a page after a
crash, overlapping delta windows and concurrent webhook/poll deliveries all
collapse to a single row. The owning ``user_id`` is always taken from the
account record, never from the caller.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Dict, Iterable, List, Tuple

if TYPE_CHECKING:
    from mailsync.core.repository import SyncRepository

from .errors import UnknownAccountError
from .models import MessageIndexEntry

logger = logging.getLogger(__name__)


class IndexWriter:
    """Write message metadata with multi-row idempotent inserts."""

    def __init__(self, repository: SyncRepository, *, chunk_size: int = 500) -> None:
        self.repository = repository
        self.chunk_size = chunk_size

    def upsert(self, entries: Iterable[MessageIndexEntry]) -> Tuple[int, int]:
        """Insert entries that are not indexed yet.

        Returns ``(inserted_count, skipped_count)`` where skipped covers both
        rows already present and duplicates within ``entries``.

        Raises:
            UnknownAccountError: An entry references a missing account
        """
        entries = list(entries)
        if not entries:
            return 0, 0

        owners: Dict[str, str] = {}
        for account_id in {e.account_id for e in entries}:
            account = self.repository.get_account(account_id)
            if account is None:
                raise UnknownAccountError(f"Cannot index messages for unknown account {account_id}")
            owners[account_id] = account.user_id

        seen = set()
        unique: List[MessageIndexEntry] = []
        for entry in entries:
            key = (entry.account_id, entry.message_id)
            if key in seen:
                continue
            seen.add(key)
            owner = owners[entry.account_id]
            if entry.user_id is not None and entry.user_id != owner:
                logger.warning(
                    "Index entry %s for account %s carried user %s; using account owner %s",
                    entry.message_id, entry.account_id, entry.user_id, owner,
                )
            unique.append(replace(entry, user_id=owner))

        inserted = 0
        for start in range(0, len(unique), self.chunk_size):
            chunk = unique[start:start + self.chunk_size]
            inserted += len(self.repository.insert_index_entries(chunk))

        skipped = len(entries) - inserted
        logger.debug("Index upsert: %d inserted, %d skipped", inserted, skipped)
        return inserted, skipped
