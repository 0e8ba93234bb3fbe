"""
Data models for the mail sync engine.

Accounts, folder cursors and index entries mirror the persisted rows; pages,
options and results are in-memory value objects passed between the
connectors, the orchestrator and the trigger surface.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderKind(str, Enum):
    """Supported provider families."""

    IMAP = "imap"
    GMAIL = "gmail"
    GRAPH = "graph"


class DeliveryMode(str, Enum):
    """How an account learns about new mail."""

    POLL = "poll"
    PUSH = "push"


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class SyncPhase(str, Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    LOCKED = "locked"
    FETCHING = "fetching"
    WRITING = "writing"
    ERROR = "error"


class SyncStatus(str, Enum):
    """Outcome of one ``run_sync`` call."""

    COMPLETED = "completed"
    ALREADY_SYNCING = "already_syncing"
    SKIPPED = "skipped"
    ERROR = "error"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Account:
    """
    A configured mailbox.

    Attributes:
        id: Account identifier
        user_id: Owning user; the source of truth for index ownership
        provider: Provider family driving connector selection
        email_address: Mailbox address, also used to resolve direction
        credentials_ref: Opaque handle understood by the credential provider
        settings: Provider specific settings (host, port, token path, ...)
        folders: Folders synced by a scheduled run
        is_active: Inactive accounts are never synced
        sync_enabled: Disabled accounts keep their schedule but never come due
        polling_interval_seconds: Requested poll interval before the floor
        delivery_mode: Effective delivery mode (exactly one)
        subscription_id: Provider subscription handle while in push mode
        subscription_folder: Folder covered by the subscription
        subscription_expires_at: When the provider drops the subscription
        subscription_client_state: Shared secret echoed back by the provider
        last_sync_at: Last successful sync
        last_attempt_at: Last attempt, successful or not
        last_error: Human readable error of the last failed attempt
        last_error_at: When ``last_error`` was recorded
        needs_reauth: Set after a persistent auth failure; cleared by operators
    """
    id: str
    user_id: str
    provider: ProviderKind
    email_address: str
    credentials_ref: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    folders: List[str] = field(default_factory=list)
    is_active: bool = True
    sync_enabled: bool = True
    polling_interval_seconds: int = 300
    delivery_mode: DeliveryMode = DeliveryMode.POLL
    subscription_id: Optional[str] = None
    subscription_folder: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    subscription_client_state: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    needs_reauth: bool = False

    def __post_init__(self) -> None:
        self.provider = ProviderKind(self.provider)
        self.delivery_mode = DeliveryMode(self.delivery_mode)


@dataclass
class FolderCursor:
    """Sync bookkeeping for one (account, folder) pair."""
    account_id: str
    folder: str
    cursor: Optional[str] = None
    in_progress: bool = False
    lock_owner: Optional[str] = None
    locked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class MessageIndexEntry:
    """
    Metadata row for one message; bodies live in the content cache.

    Attributes:
        account_id: Owning account
        user_id: Always re-derived from the account on write
        message_id: Provider-global identifier, unique per account
        folder: Folder the message was seen in
        subject: Decoded subject line
        sender: Lower-cased sender address
        recipients: Lower-cased To/Cc addresses
        direction: Sent or received relative to the account
        thread_id: Provider or header-derived conversation id
        sent_at: Date header / provider sent time
        received_at: Provider receive time when known
        has_attachments: Attachment presence as reported by the provider
        is_read: Read flag at sync time
        preview: Short text preview when the provider supplies one
        analyzed_at: Set by the learning pipeline
    """
    account_id: str
    message_id: str
    folder: str
    user_id: Optional[str] = None
    subject: Optional[str] = None
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    direction: Direction = Direction.RECEIVED
    thread_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    has_attachments: bool = False
    is_read: bool = False
    preview: Optional[str] = None
    analyzed_at: Optional[datetime] = None


@dataclass
class MessageBody:
    """Cached message content."""
    account_id: str
    message_id: str
    text: Optional[str] = None
    html: Optional[str] = None
    fetched_at: Optional[datetime] = None


@dataclass
class MessagePage:
    """
    One page returned by a connector.

    Attributes:
        messages: Index entries for this page
        next_page_token: Token for the next page, ``None`` on the last page
        new_cursor: Cursor to persist once every page has been written
        checkpoint: Cursor that resumes right after this page, when the
            provider has one; used when a run stops early at ``max_messages``
    """
    messages: List[MessageIndexEntry] = field(default_factory=list)
    next_page_token: Optional[str] = None
    new_cursor: Optional[str] = None
    checkpoint: Optional[str] = None


@dataclass
class Subscription:
    """Push subscription handle returned by a connector."""
    id: str
    folder: str
    expires_at: datetime
    client_state: Optional[str] = None


@dataclass
class SyncOptions:
    max_messages: Optional[int] = None
    full_resync: bool = False


@dataclass
class SyncResult:
    """Summary of one orchestrator run."""
    account_id: str
    folder: str
    status: SyncStatus
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    pages: int = 0
    cursor: Optional[str] = None
    truncated: bool = False
    full_resync: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "folder": self.folder,
            "status": self.status.value,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "pages": self.pages,
            "truncated": self.truncated,
            "full_resync": self.full_resync,
            "error": self.error,
        }


@dataclass
class LearningOptions:
    force_relearn: bool = False
    batch_size: int = 10
    max_messages: int = 1000
    days_back: Optional[int] = 90


@dataclass
class LearningJob:
    """
    Background learning job record.

    Attributes:
        id: Job identifier returned to the submitter
        account_id: Account whose index is analyzed
        user_id: Submitting user
        state: queued, running, completed or failed
        total: Messages selected for analysis
        processed: Messages handled so far (succeeded + failed)
        succeeded: Messages analyzed successfully
        failed: Messages in failed batches or with failed analysis
        skipped: Messages left out because they were already analyzed
        started_at: When the worker picked the job up
        finished_at: When the job reached a terminal state
        error: Pipeline level failure message
        results: Summary written on completion
    """
    id: str
    account_id: str
    user_id: str
    state: JobState = JobState.QUEUED
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    results: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.state = JobState(self.state)

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "user_id": self.user_id,
            "state": self.state.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "results": self.results,
        }
