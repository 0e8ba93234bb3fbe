"""Error taxonomy shared by connectors, the orchestrator and the real-time manager.

Connectors translate library specific failures (``HttpError``,
``requests.RequestException``, ``imaplib.IMAP4.error``) into these classes so
that the orchestrator can apply one retry policy across providers.

Lock contention is deliberately absent: a second sync for a busy
(account, folder) pair is reported through ``SyncStatus.ALREADY_SYNCING``.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


class AuthError(SyncError):
    """Credentials were rejected or could not be obtained."""


class RateLimited(SyncError):
    """The provider throttled the request.

    Parameters
    ----------
    retry_after:
        Seconds the provider asked us to wait, when it said so.
    """

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetwork(SyncError):
    """Timeouts, connection resets and 5xx responses."""


class ProviderProtocolError(SyncError):
    """The provider answered with something we cannot interpret."""


class CursorExpired(ProviderProtocolError):
    """The stored cursor is no longer accepted and a full resync is needed."""


class SubscriptionError(SyncError):
    """Creating, renewing or deleting a push subscription failed."""


class UnknownAccountError(SyncError):
    """An operation referenced an account that does not exist."""


class LockLostError(SyncError):
    """Another worker reclaimed a sync lock we believed we held."""


RETRYABLE_ERRORS = (RateLimited, TransientNetwork)
