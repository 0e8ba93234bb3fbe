"""
Sync state store: per (account, folder) cursor plus the in-progress lock.

The lock is a compare-and-swap on ``in_progress`` performed by the
repository. Locks carry an owner token and a ``locked_at`` timestamp that the
holder refreshes after every page; a lock not refreshed for
``lock_timeout_seconds`` is considered abandoned and may be taken over.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from mailsync.core.repository import SyncRepository

from .models import FolderCursor
from .utils import utcnow

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Cursor and lock bookkeeping on top of a :class:`SyncRepository`."""

    def __init__(
        self,
        repository: SyncRepository,
        *,
        lock_timeout_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self.clock = clock

    @staticmethod
    def _new_owner() -> str:
        return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"

    def acquire_lock(self, account_id: str, folder: str) -> Optional[str]:
        """Try to take the lock; returns the owner token or ``None`` if busy."""
        owner = self._new_owner()
        now = self.clock()
        if self.repository.try_lock(account_id, folder, owner, now, now - self.lock_timeout):
            logger.debug("Acquired sync lock for %s/%s as %s", account_id, folder, owner)
            return owner
        logger.info("Sync already in progress for %s/%s", account_id, folder)
        return None

    def heartbeat(self, account_id: str, folder: str, owner: str) -> bool:
        """Refresh the lock; ``False`` means another worker reclaimed it."""
        if self.repository.refresh_lock(account_id, folder, owner, self.clock()):
            return True
        logger.warning("Sync lock for %s/%s is no longer held by %s", account_id, folder, owner)
        return False

    def release(self, account_id: str, folder: str, owner: str) -> None:
        if not self.repository.release_lock(account_id, folder, owner):
            logger.warning(
                "Sync lock for %s/%s was not held by %s at release", account_id, folder, owner
            )

    def get_state(self, account_id: str, folder: str) -> Optional[FolderCursor]:
        return self.repository.get_cursor(account_id, folder)

    def get_cursor(self, account_id: str, folder: str) -> Optional[str]:
        state = self.repository.get_cursor(account_id, folder)
        return state.cursor if state else None

    def set_cursor(self, account_id: str, folder: str, cursor: Optional[str]) -> None:
        self.repository.set_cursor(account_id, folder, cursor, self.clock())
        logger.debug("Cursor for %s/%s advanced", account_id, folder)

    def is_stale(self, state: FolderCursor) -> bool:
        """True when ``state`` holds a lock that crash recovery may reclaim."""
        if not state.in_progress:
            return False
        return state.locked_at is None or state.locked_at < self.clock() - self.lock_timeout
