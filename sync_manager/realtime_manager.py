"""
Real-time sync manager.

Each account is in exactly one delivery mode. Poll-mode accounts are synced
by the scheduler thread whenever their effective interval has elapsed;
push-mode accounts are synced when a validated provider notification
arrives. A push subscription watches one folder, so the remaining folders of
a push-mode account keep being polled on the account's interval. The mode
lives on the account record and every switch is one conditional update, so
a poll cycle and a webhook never disagree about who owns a folder.
"""

import logging
import math
import secrets
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from mailsync.core.repository import SyncRepository
from mailsync.email.connectors.base import EmailConnector
from mailsync.email.errors import SyncError, UnknownAccountError
from mailsync.email.models import Account, DeliveryMode, ProviderKind, Subscription, SyncStatus
from mailsync.email.orchestrator import SyncOrchestrator
from mailsync.email.utils import utcnow
from sync_manager.core.models import SyncProcessingStatus

logger = logging.getLogger(__name__)


class RealTimeSyncManager:
    """Schedule poll syncs, maintain push subscriptions and route notifications."""

    def __init__(
        self,
        repository: SyncRepository,
        orchestrator: SyncOrchestrator,
        connector_for: Callable[[Account], EmailConnector],
        config: Any,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.connector_for = connector_for
        self.config = config
        self.clock = clock
        self._scheduler_thread: Optional[threading.Thread] = None
        self._scheduler_last_cycle: Optional[float] = None
        self.processing_status: Dict[str, SyncProcessingStatus] = {}
        self._status_lock = threading.Lock()
        self._subscribe_retry_at: Dict[str, datetime] = {}
        self._uncovered_polled_at: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def effective_interval(self, account: Account) -> float:
        """Seconds between polls; ``inf`` when syncing is disabled."""
        if not account.sync_enabled:
            return math.inf
        requested = account.polling_interval_seconds or self.config.DEFAULT_POLL_INTERVAL_SECONDS
        return float(max(requested, self.config.MIN_POLL_INTERVAL_SECONDS))

    def poll_folders(self, account: Account) -> Optional[List[str]]:
        """Folders the scheduler polls; ``None`` means every folder of the account."""
        if account.delivery_mode is not DeliveryMode.PUSH:
            return None
        covered = account.subscription_folder or (account.folders[0] if account.folders else None)
        return [f for f in account.folders if f != covered]

    def is_due(self, account: Account, now: Optional[datetime] = None) -> bool:
        """True when the scheduler should poll ``account`` at ``now``.

        Push-mode accounts are only due for folders outside their subscription.
        """
        if not account.is_active or account.needs_reauth:
            return False
        interval = self.effective_interval(account)
        if math.isinf(interval):
            return False
        if account.delivery_mode is DeliveryMode.PUSH:
            if not self.poll_folders(account):
                return False
            last = self._uncovered_polled_at.get(account.id)
        else:
            last = account.last_attempt_at or account.last_sync_at
        if last is None:
            return True
        now = now or self.clock()
        return (now - last).total_seconds() >= interval

    def due_accounts(self, now: Optional[datetime] = None) -> List[Account]:
        now = now or self.clock()
        return [a for a in self.repository.list_accounts(active_only=True) if self.is_due(a, now)]

    def run_cycle(self, now: Optional[datetime] = None) -> int:
        """One scheduler pass: maintain delivery modes, then start due polls.

        Returns:
            Number of syncs dispatched
        """
        now = now or self.clock()
        started = 0
        for account in self.repository.list_accounts(active_only=True):
            try:
                account = self.ensure_delivery_mode(account, now)
                if not self.is_due(account, now):
                    continue
                folders = self.poll_folders(account)
                if self.dispatch(account.id, folders, trigger="poll"):
                    started += 1
                    if folders is not None:
                        self._uncovered_polled_at[account.id] = now
            except Exception:
                logger.exception(f"Scheduler cycle failed for account {account.id}; continuing with the rest")
        return started

    def start_scheduler(self) -> None:
        """Start the scheduler thread if not already running."""
        if self._scheduler_thread and self._scheduler_thread.is_alive():
            logger.debug("Scheduler thread already running")
            return
        th = threading.Thread(target=self._scheduler_loop, name="scheduler")
        th.daemon = True
        th.start()
        self._scheduler_thread = th
        logger.info(f"Scheduler thread started (ident={th.ident})")

    def _scheduler_loop(self) -> None:
        """Background loop that keeps delivery modes current and polls due accounts."""
        logger.info("Scheduler started")
        cycle = 0
        while True:
            try:
                cycle += 1
                self._scheduler_last_cycle = time.time()
                started = self.run_cycle()
                logger.info(
                    "Scheduler cycle %s heartbeat: started=%s in_flight=%s",
                    cycle, started, len(self.processing_status),
                )
                sleep_for = (
                    self.config.SCHEDULER_POLL_SECONDS_BUSY if started
                    else self.config.SCHEDULER_POLL_SECONDS_IDLE
                )
                logger.debug(f"Scheduler cycle {cycle}: sleeping {sleep_for}s")
                time.sleep(sleep_for)
            except Exception as e:
                logger.exception(f"Scheduler loop error: {e}")
                time.sleep(30)

    def scheduler_status(self) -> Dict[str, Any]:
        """Return current scheduler diagnostic info."""
        alive = bool(self._scheduler_thread and self._scheduler_thread.is_alive())
        last_cycle_age = None
        if self._scheduler_last_cycle:
            last_cycle_age = round(time.time() - self._scheduler_last_cycle, 2)
        accounts = self.repository.list_accounts(active_only=True)
        now = self.clock()
        with self._status_lock:
            in_flight = [s.to_dict() for s in self.processing_status.values()]
        return {
            'running': alive,
            'thread_ident': getattr(self._scheduler_thread, 'ident', None),
            'last_cycle_age_seconds': last_cycle_age,
            'poll_accounts': sum(1 for a in accounts if a.delivery_mode is DeliveryMode.POLL),
            'push_accounts': sum(1 for a in accounts if a.delivery_mode is DeliveryMode.PUSH),
            'due_count': sum(1 for a in accounts if self.is_due(a, now)),
            'in_flight': in_flight,
            'poll_busy_seconds': self.config.SCHEDULER_POLL_SECONDS_BUSY,
            'poll_idle_seconds': self.config.SCHEDULER_POLL_SECONDS_IDLE,
            'min_poll_interval_seconds': self.config.MIN_POLL_INTERVAL_SECONDS,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def dispatch(self, account_id: str, folders: Optional[List[str]] = None, trigger: str = "poll") -> bool:
        """Start a background sync unless one is already in flight for the account."""
        with self._status_lock:
            if account_id in self.processing_status:
                logger.debug(f"Sync for {account_id} already in flight; not dispatching ({trigger})")
                return False
            status = SyncProcessingStatus(
                account_id=account_id,
                trigger=trigger,
                folders=list(folders or []),
                start_time=self.clock(),
            )
            self.processing_status[account_id] = status
        t = threading.Thread(
            target=self._run_dispatch,
            args=(status,),
            name=f"sync-{account_id}",
        )
        t.daemon = True
        t.start()
        return True

    def _run_dispatch(self, status: SyncProcessingStatus) -> None:
        status.status = "processing"
        try:
            if status.folders:
                results = [self.orchestrator.run_sync(status.account_id, folder) for folder in status.folders]
            else:
                results = self.orchestrator.sync_account(status.account_id)
            status.results = [r.to_dict() for r in results]
            errors = [r.error for r in results if r.status is SyncStatus.ERROR]
            status.status = "error" if errors else "completed"
            status.message = "; ".join(errors)
        except Exception as exc:
            logger.exception(f"Background sync for {status.account_id} failed")
            status.status = "error"
            status.error_details = str(exc)
        finally:
            status.end_time = self.clock()
            with self._status_lock:
                self.processing_status.pop(status.account_id, None)

    # ------------------------------------------------------------------
    # Delivery mode
    # ------------------------------------------------------------------
    def _notification_url(self, account: Account) -> Optional[str]:
        if account.provider is ProviderKind.GRAPH and self.config.WEBHOOK_BASE_URL:
            return f"{self.config.WEBHOOK_BASE_URL.rstrip('/')}/webhooks/graph"
        return None

    def push_available(self, account: Account, connector: Optional[EmailConnector] = None) -> bool:
        """Whether push delivery can be used for ``account`` right now."""
        if not account.sync_enabled or account.needs_reauth:
            return False
        if not account.settings.get("push_enabled", True):
            return False
        connector = connector or self.connector_for(account)
        if not connector.supports_push:
            return False
        if account.provider is ProviderKind.GRAPH:
            return bool(self.config.WEBHOOK_BASE_URL)
        if account.provider is ProviderKind.GMAIL:
            return bool(account.settings.get("pubsub_topic") or self.config.GMAIL_PUBSUB_TOPIC)
        return False

    def ensure_delivery_mode(self, account: Account, now: Optional[datetime] = None) -> Account:
        """Subscribe, renew or fall back so the account's mode matches what is possible.

        Returns:
            The account as stored after any mode change
        """
        now = now or self.clock()
        connector = self.connector_for(account)
        wants_push = self.push_available(account, connector)

        if account.delivery_mode is DeliveryMode.PUSH:
            if not wants_push:
                self._fall_back_to_poll(account, connector, "push delivery no longer available")
            elif self._needs_renewal(account, now):
                self._renew(account, connector, now)
            else:
                return account
        elif wants_push:
            retry_at = self._subscribe_retry_at.get(account.id)
            if retry_at is not None and now < retry_at:
                return account
            self._subscribe(account, connector, now)
        else:
            return account
        return self.repository.get_account(account.id) or account

    def _needs_renewal(self, account: Account, now: datetime) -> bool:
        if account.subscription_expires_at is None:
            return True
        remaining = (account.subscription_expires_at - now).total_seconds()
        return remaining <= self.config.SUBSCRIPTION_RENEW_BEFORE_SECONDS

    def _subscribe(self, account: Account, connector: EmailConnector, now: datetime) -> bool:
        folder = account.folders[0] if account.folders else connector.default_folder
        expires_at = now + timedelta(minutes=self.config.GRAPH_SUBSCRIPTION_MINUTES)
        try:
            subscription = connector.subscribe(
                account, folder, self._notification_url(account), secrets.token_urlsafe(24), expires_at
            )
        except SyncError as exc:
            self._subscribe_retry_at[account.id] = now + timedelta(seconds=self.config.SUBSCRIPTION_RETRY_SECONDS)
            logger.warning(f"Push subscription for {account.email_address} failed; staying on poll: {exc}")
            return False

        self._subscribe_retry_at.pop(account.id, None)
        switched = self.repository.update_account_if(
            account.id,
            {"delivery_mode": DeliveryMode.POLL, "subscription_id": account.subscription_id},
            {
                "delivery_mode": DeliveryMode.PUSH,
                "subscription_id": subscription.id,
                "subscription_folder": subscription.folder,
                "subscription_expires_at": subscription.expires_at,
                "subscription_client_state": subscription.client_state,
            },
        )
        if not switched:
            logger.info(f"Account {account.id} changed mode concurrently; dropping subscription {subscription.id}")
            self._unsubscribe(account, connector, subscription.id)
            return False
        logger.info(
            f"Account {account.id} switched to push (subscription {subscription.id}, "
            f"expires {subscription.expires_at.isoformat()})"
        )
        return True

    def _renew(self, account: Account, connector: EmailConnector, now: datetime) -> bool:
        current = account_subscription(account)
        if current is None:
            return self._fall_back_to_poll(account, connector, "push mode without a subscription")
        expires_at = now + timedelta(minutes=self.config.GRAPH_SUBSCRIPTION_MINUTES)
        try:
            renewed = connector.renew(account, current, expires_at)
        except SyncError as exc:
            logger.warning(f"Renewing subscription {current.id} for {account.email_address} failed: {exc}")
            return self._fall_back_to_poll(account, connector, f"renewal failed: {exc}")

        updated = self.repository.update_account_if(
            account.id,
            {"delivery_mode": DeliveryMode.PUSH, "subscription_id": current.id},
            {"subscription_expires_at": renewed.expires_at},
        )
        if updated:
            logger.info(f"Subscription {current.id} renewed until {renewed.expires_at.isoformat()}")
        return updated

    def _fall_back_to_poll(self, account: Account, connector: EmailConnector, reason: str) -> bool:
        switched = self.repository.update_account_if(
            account.id,
            {"delivery_mode": DeliveryMode.PUSH, "subscription_id": account.subscription_id},
            {
                "delivery_mode": DeliveryMode.POLL,
                "subscription_id": None,
                "subscription_folder": None,
                "subscription_expires_at": None,
                "subscription_client_state": None,
            },
        )
        if not switched:
            return False
        logger.warning(f"Account {account.id} fell back to poll mode: {reason}")
        if account.subscription_id:
            self._unsubscribe(account, connector, account.subscription_id)
        return True

    def _unsubscribe(self, account: Account, connector: EmailConnector, subscription_id: str) -> None:
        try:
            connector.unsubscribe(account, subscription_id)
        except SyncError as exc:
            logger.warning(f"Could not remove subscription {subscription_id} for {account.email_address}: {exc}")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def handle_notification(self, provider: ProviderKind, payload: Dict[str, Any]) -> Dict[str, int]:
        """Validate a provider notification and dispatch the matching syncs.

        Args:
            provider: Provider family the webhook endpoint belongs to
            payload: Graph change notification collection, or the decoded
                Gmail Pub/Sub message data (``emailAddress``, ``historyId``)

        Returns:
            Counts of ``accepted``, ``rejected`` and ``dispatched`` notifications.
            Rejected notifications change nothing.
        """
        provider = ProviderKind(provider)
        summary = {"accepted": 0, "rejected": 0, "dispatched": 0}
        targets: Dict[str, List[str]] = {}

        if not isinstance(payload, dict):
            logger.warning(f"Rejected {provider.value} notification that is not a JSON object")
            summary["rejected"] += 1
        elif provider is ProviderKind.GRAPH:
            items = payload.get("value")
            if not isinstance(items, list):
                logger.warning("Rejected Graph notification collection without a value list")
                summary["rejected"] += 1
                items = []
            for item in items:
                account = self._validate_graph(item) if isinstance(item, dict) else None
                if account is None:
                    summary["rejected"] += 1
                    continue
                summary["accepted"] += 1
                folder = account.subscription_folder or (account.folders[0] if account.folders else "inbox")
                targets.setdefault(account.id, [])
                if folder not in targets[account.id]:
                    targets[account.id].append(folder)
        elif provider is ProviderKind.GMAIL:
            account = self._validate_gmail(payload)
            if account is None:
                summary["rejected"] += 1
            else:
                summary["accepted"] += 1
                folder = account.subscription_folder or (account.folders[0] if account.folders else "INBOX")
                targets[account.id] = [folder]
        else:
            logger.warning(f"Notifications are not supported for provider {provider.value}")
            summary["rejected"] += 1

        for account_id, folders in targets.items():
            if self.dispatch(account_id, folders, trigger="push"):
                summary["dispatched"] += 1
        return summary

    def _accepts_push(self, account: Optional[Account]) -> bool:
        return bool(
            account is not None
            and account.is_active
            and account.sync_enabled
            and not account.needs_reauth
            and account.delivery_mode is DeliveryMode.PUSH
        )

    def _validate_graph(self, item: Dict[str, Any]) -> Optional[Account]:
        subscription_id = item.get("subscriptionId")
        if not subscription_id or not isinstance(subscription_id, str):
            logger.warning("Rejected Graph notification without subscriptionId")
            return None
        account = self.repository.find_account_by_subscription(subscription_id)
        if not self._accepts_push(account):
            logger.warning(f"Rejected Graph notification for subscription {subscription_id}: no push account")
            return None
        if account.subscription_client_state and item.get("clientState") != account.subscription_client_state:
            logger.warning(f"Rejected Graph notification for subscription {subscription_id}: client state mismatch")
            return None
        return account

    def _validate_gmail(self, data: Dict[str, Any]) -> Optional[Account]:
        address = data.get("emailAddress")
        address = address.strip().lower() if isinstance(address, str) else ""
        if not address:
            logger.warning("Rejected Gmail notification without emailAddress")
            return None
        account = self.repository.find_account_by_address(ProviderKind.GMAIL, address)
        if not self._accepts_push(account):
            logger.warning(f"Rejected Gmail notification for {address}: no push account")
            return None
        return account

    def trigger(self, account_id: str, folders: Optional[List[str]] = None) -> bool:
        """Manual background sync, regardless of delivery mode."""
        if self.repository.get_account(account_id) is None:
            raise UnknownAccountError(f"No email account found for id {account_id}")
        return self.dispatch(account_id, folders, trigger="manual")


def account_subscription(account: Account) -> Optional[Subscription]:
    """Subscription currently recorded on ``account``, if any."""
    if not account.subscription_id or account.subscription_expires_at is None:
        return None
    return Subscription(
        id=account.subscription_id,
        folder=account.subscription_folder or (account.folders[0] if account.folders else ""),
        expires_at=account.subscription_expires_at,
        client_state=account.subscription_client_state,
    )
