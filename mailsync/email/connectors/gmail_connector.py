"""Gmail API email connector implementation.

This module provides the :class:`GmailConnector` implementation for
synchronizing a Gmail label through the Gmail REST API.

Cursor format is the mailbox ``historyId``. A full sync records the profile
``historyId`` before listing so that mail arriving during the listing is
picked up by the next delta sync. A full sync cut short by ``max_messages``
checkpoints as ``full:<historyId>:<listPageToken>`` and the next run resumes
the listing from there. Delta syncs read ``users.history.list``;
Gmail answers 404 once a history id is too old, which surfaces as
:class:`CursorExpired`.
"""

from __future__ import annotations

import base64
import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from email import message_from_bytes
from email.utils import getaddresses
from typing import Any, Dict, Iterator, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import (
    AuthError,
    CursorExpired,
    ProviderProtocolError,
    RateLimited,
    SubscriptionError,
    SyncError,
    TransientNetwork,
)
from ..models import Account, Direction, MessageBody, MessageIndexEntry, MessagePage, Subscription
from ..utils import utcnow
from .base import EmailConnector
from .imap_connector import IMAPConnector

logger = logging.getLogger(__name__)

METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date", "Message-ID"]
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
FULL_SYNC_PREFIX = "full:"


class GmailConnector(EmailConnector):
    """Synchronize Gmail labels via the Gmail API."""

    provider_name = "gmail"
    default_folder = "INBOX"
    supports_push = True

    # Reuse email parsing utilities from IMAP connector
    _decode_header_value = IMAPConnector._decode_header_value
    _decode_part = IMAPConnector._decode_part
    _extract_bodies = IMAPConnector._extract_bodies
    _parse_date = IMAPConnector._parse_date

    def __init__(
        self,
        credentials,
        *,
        timeout: float = 30.0,
        topic_name: Optional[str] = None,
        user_id: str = "me",
    ) -> None:
        super().__init__(credentials, timeout=timeout)
        self.topic_name = topic_name
        self.user_id = user_id

    # ------------------------------------------------------------------
    def _service(self, account: Account):
        creds = self._credential(account)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    @contextmanager
    def _api_errors(self) -> Iterator[None]:
        try:
            yield
        except SyncError:
            raise
        except HttpError as exc:
            raise self._translate_http_error(exc) from exc
        except RefreshError as exc:
            raise AuthError(f"Gmail token refresh failed: {exc}") from exc
        except (TransportError, OSError, TimeoutError) as exc:
            raise TransientNetwork(f"Gmail network error: {exc}") from exc

    @staticmethod
    def _error_reasons(exc: HttpError) -> List[str]:
        content = exc.content.decode("utf-8", errors="ignore") if isinstance(exc.content, bytes) else exc.content
        try:
            data = json.loads(content or "{}")
        except ValueError:
            return []
        if not isinstance(data, dict):
            return []
        errors = data.get("error", {}).get("errors", []) if isinstance(data.get("error"), dict) else []
        return [e.get("reason", "") for e in errors if isinstance(e, dict)]

    def _translate_http_error(self, exc: HttpError) -> SyncError:
        status = int(getattr(exc.resp, "status", 0) or 0)
        reasons = self._error_reasons(exc)
        message = f"Gmail API error {status}: {reasons or exc}"
        if status == 429 or (status == 403 and RATE_LIMIT_REASONS.intersection(reasons)):
            retry_after = None
            getter = getattr(exc.resp, "get", None)
            if callable(getter) and getter("retry-after"):
                try:
                    retry_after = float(getter("retry-after"))
                except (TypeError, ValueError):
                    retry_after = None
            return RateLimited(message, retry_after=retry_after)
        if status in (401, 403):
            return AuthError(message)
        if status >= 500:
            return TransientNetwork(message)
        return ProviderProtocolError(message)

    # ------------------------------------------------------------------
    def fetch_page(
        self,
        account: Account,
        folder: str,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> MessagePage:
        with self._api_errors():
            service = self._service(account)
            if cursor is None:
                return self._full_page(service, account, folder, page_token, page_size)
            if cursor.startswith(FULL_SYNC_PREFIX):
                return self._full_page(
                    service, account, folder, page_token or cursor[len(FULL_SYNC_PREFIX):], page_size,
                    resuming=page_token is None,
                )
            return self._history_page(service, account, folder, cursor, page_token, page_size)

    def _full_page(
        self,
        service,
        account: Account,
        folder: str,
        page_token: Optional[str],
        page_size: int,
        resuming: bool = False,
    ) -> MessagePage:
        if page_token:
            start_history, _, list_token = page_token.partition(":")
        else:
            profile = service.users().getProfile(userId=self.user_id).execute()
            start_history = str(profile["historyId"])
            list_token = ""

        list_kwargs: Dict[str, Any] = {
            "userId": self.user_id,
            "labelIds": [folder],
            "maxResults": min(page_size, 500),
        }
        if list_token:
            list_kwargs["pageToken"] = list_token
        try:
            response = service.users().messages().list(**list_kwargs).execute()
        except HttpError as exc:
            if resuming and int(getattr(exc.resp, "status", 0) or 0) in (400, 404):
                raise CursorExpired(f"Gmail list page token for {folder} is no longer valid") from exc
            raise
        ids = [meta["id"] for meta in response.get("messages", [])]
        entries = self._get_metadata(service, account, folder, ids)
        next_token = response.get("nextPageToken")
        logger.info(
            "Gmail full sync page for %s/%s: %d message(s), more=%s",
            account.email_address, folder, len(entries), bool(next_token),
        )
        return MessagePage(
            messages=entries,
            next_page_token=f"{start_history}:{next_token}" if next_token else None,
            new_cursor=None if next_token else start_history,
            checkpoint=f"{FULL_SYNC_PREFIX}{start_history}:{next_token}" if next_token else start_history,
        )

    def _history_page(
        self,
        service,
        account: Account,
        folder: str,
        cursor: str,
        page_token: Optional[str],
        page_size: int,
    ) -> MessagePage:
        history_kwargs: Dict[str, Any] = {
            "userId": self.user_id,
            "startHistoryId": cursor,
            "labelId": folder,
            "historyTypes": ["messageAdded"],
            "maxResults": min(page_size, 500),
        }
        if page_token:
            history_kwargs["pageToken"] = page_token
        try:
            response = service.users().history().list(**history_kwargs).execute()
        except HttpError as exc:
            if int(getattr(exc.resp, "status", 0) or 0) == 404:
                raise CursorExpired(f"Gmail historyId {cursor} is no longer available") from exc
            raise

        ids: List[str] = []
        seen = set()
        history = response.get("history", [])
        for record in history:
            for added in record.get("messagesAdded", []):
                message = added.get("message") or {}
                labels = message.get("labelIds")
                if labels is not None and folder not in labels:
                    continue
                msg_id = message.get("id")
                if msg_id and msg_id not in seen:
                    seen.add(msg_id)
                    ids.append(msg_id)

        entries = self._get_metadata(service, account, folder, ids)
        next_token = response.get("nextPageToken")
        checkpoint = str(history[-1]["id"]) if history and history[-1].get("id") else None
        logger.info(
            "Gmail history page for %s/%s since %s: %d new message(s), more=%s",
            account.email_address, folder, cursor, len(entries), bool(next_token),
        )
        return MessagePage(
            messages=entries,
            next_page_token=next_token,
            new_cursor=None if next_token else str(response.get("historyId") or cursor),
            checkpoint=checkpoint,
        )

    def _get_metadata(self, service, account: Account, folder: str, ids: List[str]) -> List[MessageIndexEntry]:
        entries: List[MessageIndexEntry] = []
        for msg_id in ids:
            try:
                data = (
                    service.users()
                    .messages()
                    .get(userId=self.user_id, id=msg_id, format="metadata", metadataHeaders=METADATA_HEADERS)
                    .execute()
                )
            except HttpError as exc:
                if int(getattr(exc.resp, "status", 0) or 0) == 404:
                    logger.debug("Gmail message %s disappeared before metadata fetch", msg_id)
                    continue
                raise
            entries.append(self._entry_from_metadata(data, account, folder))
        return entries

    def _entry_from_metadata(self, data: Dict[str, Any], account: Account, folder: str) -> MessageIndexEntry:
        payload = data.get("payload") or {}
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
        labels = data.get("labelIds") or []

        sender = None
        if headers.get("from"):
            addrs = getaddresses([headers["from"]])
            if addrs:
                sender = (addrs[0][1] or addrs[0][0]).lower() or None
        recipients = [
            addr.lower()
            for _, addr in getaddresses([headers.get("to", ""), headers.get("cc", "")])
            if addr
        ]
        received_at = None
        if data.get("internalDate"):
            received_at = datetime.fromtimestamp(int(data["internalDate"]) / 1000, tz=UTC)

        return MessageIndexEntry(
            account_id=account.id,
            user_id=account.user_id,
            message_id=data["id"],
            folder=folder,
            subject=self._decode_header_value(headers.get("subject")),
            sender=sender,
            recipients=recipients,
            direction=Direction.SENT if "SENT" in labels else Direction.RECEIVED,
            thread_id=data.get("threadId"),
            sent_at=self._parse_date(headers.get("date")) or received_at,
            received_at=received_at,
            has_attachments=(payload.get("mimeType") or "").startswith("multipart/mixed"),
            is_read="UNREAD" not in labels,
            preview=data.get("snippet"),
        )

    # ------------------------------------------------------------------
    def fetch_body(self, account: Account, message_id: str, folder: Optional[str] = None) -> MessageBody:
        with self._api_errors():
            service = self._service(account)
            data = (
                service.users()
                .messages()
                .get(userId=self.user_id, id=message_id, format="raw")
                .execute()
            )
        try:
            raw = base64.urlsafe_b64decode(data.get("raw", "").encode("utf-8"))
        except ValueError as exc:
            raise ProviderProtocolError(f"Gmail returned undecodable raw message {message_id}") from exc
        text, html = self._extract_bodies(message_from_bytes(raw))
        return MessageBody(
            account_id=account.id,
            message_id=message_id,
            text=text,
            html=html,
            fetched_at=utcnow(),
        )

    # ------------------------------------------------------------------
    def subscribe(
        self,
        account: Account,
        folder: str,
        notification_url: Optional[str],
        client_state: str,
        expires_at: datetime,
    ) -> Subscription:
        """Start a ``users.watch`` on ``folder``; Gmail decides the expiry."""
        topic = account.settings.get("pubsub_topic") or self.topic_name
        if not topic:
            raise SubscriptionError("No Pub/Sub topic configured for Gmail push notifications")
        with self._api_errors():
            service = self._service(account)
            response = (
                service.users()
                .watch(
                    userId=self.user_id,
                    body={"topicName": topic, "labelIds": [folder], "labelFilterBehavior": "INCLUDE"},
                )
                .execute()
            )
        expiration = response.get("expiration")
        if not expiration:
            raise SubscriptionError(f"Gmail watch for {account.email_address} returned no expiration")
        logger.info(
            "Gmail watch started for %s on %s (historyId=%s)",
            account.email_address, folder, response.get("historyId"),
        )
        return Subscription(
            id=f"gmail-watch:{account.email_address.lower()}",
            folder=folder,
            expires_at=datetime.fromtimestamp(int(expiration) / 1000, tz=UTC),
            client_state=client_state,
        )

    def renew(self, account: Account, subscription: Subscription, expires_at: datetime) -> Subscription:
        # Calling watch again on the same label extends it
        return self.subscribe(account, subscription.folder, None, subscription.client_state or "", expires_at)

    def unsubscribe(self, account: Account, subscription_id: str) -> None:
        with self._api_errors():
            service = self._service(account)
            service.users().stop(userId=self.user_id).execute()
        logger.info("Gmail watch stopped for %s", account.email_address)
