"""
This module defines the SyncOrchestrator class, which runs one synchronization
of an (account, folder) pair. Full and delta syncs share the same algorithm;
they differ only in whether a stored cursor is passed to the connector.

Per pair the orchestrator moves through IDLE -> LOCKED -> FETCHING -> WRITING
-> IDLE, with ERROR as a transient phase on failure. The stored cursor only
advances after every page of a run has been written.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from mailsync.core.repository import SyncRepository

from .connectors.base import EmailConnector
from .credentials import CredentialProvider
from .errors import (
    RETRYABLE_ERRORS,
    AuthError,
    CursorExpired,
    LockLostError,
    RateLimited,
    SyncError,
    UnknownAccountError,
)
from .index_writer import IndexWriter
from .models import Account, SyncOptions, SyncPhase, SyncResult, SyncStatus
from .sync_state import SyncStateStore
from .utils import utcnow

logger = logging.getLogger(__name__)


def describe_health(account: Account) -> str:
    """Summarize an account's sync health from its persisted fields.

    Returns one of ``disabled``, ``needs_reauth``, ``error``,
    ``never_synced`` or ``healthy``.
    """
    if not account.is_active or not account.sync_enabled:
        return "disabled"
    if account.needs_reauth:
        return "needs_reauth"
    if account.last_error and (
        account.last_sync_at is None
        or (account.last_error_at is not None and account.last_error_at >= account.last_sync_at)
    ):
        return "error"
    if account.last_sync_at is None:
        return "never_synced"
    return "healthy"


class SyncOrchestrator:
    """Run syncs for (account, folder) pairs."""

    def __init__(
        self,
        repository: SyncRepository,
        state_store: SyncStateStore,
        index_writer: IndexWriter,
        connector_for: Callable[[Account], EmailConnector],
        credentials: CredentialProvider,
        *,
        page_size: int = 100,
        max_retries: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.state_store = state_store
        self.index_writer = index_writer
        self.connector_for = connector_for
        self.credentials = credentials
        self.page_size = page_size
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.sleep = sleep
        self.clock = clock
        self._phases: Dict[Tuple[str, str], SyncPhase] = {}
        self._phases_lock = threading.Lock()

    # ------------------------------------------------------------------
    def current_phase(self, account_id: str, folder: str) -> SyncPhase:
        with self._phases_lock:
            return self._phases.get((account_id, folder), SyncPhase.IDLE)

    def _set_phase(self, account_id: str, folder: str, phase: SyncPhase) -> None:
        with self._phases_lock:
            if phase is SyncPhase.IDLE:
                self._phases.pop((account_id, folder), None)
            else:
                self._phases[(account_id, folder)] = phase

    # ------------------------------------------------------------------
    def run_sync(
        self,
        account_id: str,
        folder: Optional[str] = None,
        options: Optional[SyncOptions] = None,
    ) -> SyncResult:
        """Synchronize one folder of one account.

        Args:
            account_id: Account to sync
            folder: Provider folder; defaults to the account's first folder
            options: ``max_messages`` cap and ``full_resync`` flag

        Returns:
            SyncResult describing what happened. Provider failures are
            reported through ``status == ERROR``; unexpected exceptions are
            recorded on the account and re-raised.

        Raises:
            UnknownAccountError: The account does not exist
        """
        options = options or SyncOptions()
        account = self.repository.get_account(account_id)
        if account is None:
            raise UnknownAccountError(f"No email account found for id {account_id}")
        connector = self.connector_for(account)
        folder = folder or (account.folders[0] if account.folders else connector.default_folder)

        if not account.is_active:
            return SyncResult(account_id, folder, SyncStatus.SKIPPED, error="account is inactive")
        if account.needs_reauth:
            return SyncResult(
                account_id, folder, SyncStatus.SKIPPED,
                error="account needs re-authentication: " + (account.last_error or "auth failure"),
            )

        owner = self.state_store.acquire_lock(account_id, folder)
        if owner is None:
            return SyncResult(account_id, folder, SyncStatus.ALREADY_SYNCING)

        self._set_phase(account_id, folder, SyncPhase.LOCKED)
        result = SyncResult(account_id, folder, SyncStatus.COMPLETED, full_resync=options.full_resync)
        logger.info(
            "Sync start for %s/%s (provider=%s, full_resync=%s, max_messages=%s)",
            account_id, folder, account.provider.value, options.full_resync, options.max_messages,
        )
        try:
            self._sync_folder(account, connector, folder, owner, options, result)
        except AuthError as exc:
            self._set_phase(account_id, folder, SyncPhase.ERROR)
            logger.warning("Sync for %s/%s stopped by auth failure: %s", account_id, folder, exc)
            self._record_failure(account, exc, needs_reauth=True)
            result.status, result.error = SyncStatus.ERROR, str(exc)
        except SyncError as exc:
            self._set_phase(account_id, folder, SyncPhase.ERROR)
            logger.warning("Sync for %s/%s failed: %s", account_id, folder, exc)
            self._record_failure(account, exc)
            result.status, result.error = SyncStatus.ERROR, str(exc)
        except Exception as exc:
            self._set_phase(account_id, folder, SyncPhase.ERROR)
            logger.exception("Unexpected error syncing %s/%s", account_id, folder)
            self._record_failure(account, exc)
            raise
        else:
            now = self.clock()
            self.repository.update_account(
                account_id,
                {"last_sync_at": now, "last_attempt_at": now, "last_error": None, "last_error_at": None},
            )
            logger.info(
                "Sync complete for %s/%s: fetched=%d inserted=%d skipped=%d pages=%d truncated=%s",
                account_id, folder, result.fetched, result.inserted, result.skipped,
                result.pages, result.truncated,
            )
        finally:
            self.state_store.release(account_id, folder, owner)
            self._set_phase(account_id, folder, SyncPhase.IDLE)
        return result

    def sync_account(self, account_id: str, options: Optional[SyncOptions] = None) -> List[SyncResult]:
        """Run ``run_sync`` for every configured folder of the account."""
        account = self.repository.get_account(account_id)
        if account is None:
            raise UnknownAccountError(f"No email account found for id {account_id}")
        folders = account.folders or [self.connector_for(account).default_folder]
        return [self.run_sync(account_id, folder, options) for folder in folders]

    # ------------------------------------------------------------------
    def _sync_folder(
        self,
        account: Account,
        connector: EmailConnector,
        folder: str,
        owner: str,
        options: SyncOptions,
        result: SyncResult,
    ) -> None:
        cursor = None if options.full_resync else self.state_store.get_cursor(account.id, folder)
        result.full_resync = cursor is None
        while True:
            try:
                new_cursor = self._walk_pages(account, connector, folder, cursor, owner, options, result)
                break
            except CursorExpired as exc:
                if cursor is None:
                    raise
                logger.warning(
                    "Cursor for %s/%s expired (%s); falling back to a full resync",
                    account.id, folder, exc,
                )
                cursor = None
                result.full_resync = True

        if new_cursor is not None:
            self.state_store.set_cursor(account.id, folder, new_cursor)
            result.cursor = new_cursor
        else:
            result.cursor = cursor

    def _walk_pages(
        self,
        account: Account,
        connector: EmailConnector,
        folder: str,
        cursor: Optional[str],
        owner: str,
        options: SyncOptions,
        result: SyncResult,
    ) -> Optional[str]:
        """Fetch and write pages; return the cursor to persist (``None`` keeps the old one)."""
        page_token: Optional[str] = None
        final_cursor: Optional[str] = None
        while True:
            self._set_phase(account.id, folder, SyncPhase.FETCHING)
            size = self.page_size
            if options.max_messages is not None:
                size = max(1, min(self.page_size, options.max_messages - result.fetched))
            token = page_token
            page = self._call(
                account,
                lambda: connector.fetch_page(account, folder, cursor, token, size),
            )

            self._set_phase(account.id, folder, SyncPhase.WRITING)
            inserted, skipped = self.index_writer.upsert(page.messages)
            result.pages += 1
            result.fetched += len(page.messages)
            result.inserted += inserted
            result.skipped += skipped
            if not self.state_store.heartbeat(account.id, folder, owner):
                raise LockLostError(f"Sync lock for {account.id}/{folder} was reclaimed")

            if page.new_cursor is not None:
                final_cursor = page.new_cursor
            page_token = page.next_page_token
            if not page_token:
                return final_cursor
            if options.max_messages is not None and result.fetched >= options.max_messages:
                result.truncated = True
                logger.info(
                    "Sync for %s/%s reached max_messages=%d; stopping at page checkpoint",
                    account.id, folder, options.max_messages,
                )
                return page.checkpoint

    def _call(self, account: Account, fn: Callable[[], Any]) -> Any:
        """Call a provider operation with auth refresh and bounded backoff."""
        attempt = 0
        auth_retried = False
        while True:
            try:
                return fn()
            except AuthError:
                if auth_retried:
                    raise
                auth_retried = True
                logger.info("Auth failure for account %s; refreshing credentials and retrying", account.id)
                self.credentials.invalidate(account)
            except RETRYABLE_ERRORS as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
                if isinstance(exc, RateLimited) and exc.retry_after is not None:
                    if exc.retry_after > self.backoff_max_seconds:
                        logger.warning(
                            "Account %s throttled for %.0fs, beyond the %.0fs backoff cap; giving up this run",
                            account.id, exc.retry_after, self.backoff_max_seconds,
                        )
                        raise
                    delay = exc.retry_after
                logger.warning(
                    "Retryable error for account %s (attempt %d/%d): %s; sleeping %.1fs",
                    account.id, attempt, self.max_retries, exc, delay,
                )
                self.sleep(delay)

    def _record_failure(self, account: Account, exc: BaseException, needs_reauth: bool = False) -> None:
        now = self.clock()
        updates: Dict[str, Any] = {
            "last_attempt_at": now,
            "last_error": f"{exc.__class__.__name__}: {exc}",
            "last_error_at": now,
        }
        if needs_reauth:
            updates["needs_reauth"] = True
        self.repository.update_account(account.id, updates)

    # ------------------------------------------------------------------
    def account_status(self, account_id: str) -> Dict[str, Any]:
        """Health and per-folder state for operators."""
        account = self.repository.get_account(account_id)
        if account is None:
            raise UnknownAccountError(f"No email account found for id {account_id}")
        folders = account.folders or [self.connector_for(account).default_folder]
        folder_states = []
        for folder in folders:
            state = self.state_store.get_state(account_id, folder)
            folder_states.append({
                "folder": folder,
                "has_cursor": bool(state and state.cursor),
                "in_progress": bool(state and state.in_progress),
                "stale_lock": bool(state and self.state_store.is_stale(state)),
                "phase": self.current_phase(account_id, folder).value,
                "cursor_updated_at": state.updated_at.isoformat() if state and state.updated_at else None,
            })
        health = describe_health(account)
        if health in ("healthy", "never_synced") and any(f["in_progress"] and not f["stale_lock"] for f in folder_states):
            health = "syncing"
        return {
            "account_id": account.id,
            "email_address": account.email_address,
            "provider": account.provider.value,
            "health": health,
            "delivery_mode": account.delivery_mode.value,
            "last_sync_at": account.last_sync_at.isoformat() if account.last_sync_at else None,
            "last_attempt_at": account.last_attempt_at.isoformat() if account.last_attempt_at else None,
            "last_error": account.last_error,
            "needs_reauth": account.needs_reauth,
            "folders": folder_states,
        }
