"""Microsoft Graph email connector implementation.

This module provides the :class:`GraphConnector` implementation for Microsoft
365 / Outlook mailboxes using the Graph REST API.

Cursor format is the ``@odata.deltaLink`` URL returned at the end of a delta
round. Pages inside a round are followed through ``@odata.nextLink``; a
nextLink is itself resumable and doubles as the page checkpoint. Push
notifications use Graph change-notification subscriptions.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

import requests

from ..errors import (
    AuthError,
    CursorExpired,
    ProviderProtocolError,
    RateLimited,
    SubscriptionError,
    TransientNetwork,
)
from ..models import Account, Direction, MessageBody, MessageIndexEntry, MessagePage, Subscription
from ..utils import parse_iso_datetime, resolve_direction, utcnow
from .base import EmailConnector

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
SELECT_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,receivedDateTime,"
    "sentDateTime,hasAttachments,isRead,bodyPreview,parentFolderId,internetMessageId"
)
SENT_FOLDERS = {"sentitems", "sent items"}
EXPIRED_CURSOR_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired"}


class GraphConnector(EmailConnector):
    """Synchronize Outlook mail folders through Microsoft Graph."""

    provider_name = "graph"
    default_folder = "inbox"
    supports_push = True

    def __init__(
        self,
        credentials,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        base_url: str = GRAPH_BASE_URL,
    ) -> None:
        super().__init__(credentials, timeout=timeout)
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    def _user_path(self, account: Account) -> str:
        return f"/users/{account.settings.get('user_principal') or account.email_address}"

    def _request(
        self,
        account: Account,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated Graph request and translate failures."""
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"
        token = self._credential(account)
        request_headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        request_headers.update(headers or {})
        try:
            response = self.session.request(
                method,
                url,
                headers=request_headers,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientNetwork(f"Graph request failed: {exc}") from exc

        if response.status_code >= 400:
            raise self._translate_error(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderProtocolError(f"Graph returned invalid JSON for {method} {url}") from exc

    @staticmethod
    def _translate_error(response: requests.Response):
        status = response.status_code
        code = ""
        message = response.reason or ""
        try:
            payload = response.json()
            error = payload.get("error") if isinstance(payload, dict) else None
            if not isinstance(error, dict):
                error = {}
            code = error.get("code") or ""
            message = error.get("message") or message
        except ValueError:
            pass
        text = f"Graph API error {status} {code}: {message}".strip()
        if status == 410 or code.lower() in EXPIRED_CURSOR_CODES:
            return CursorExpired(text)
        if status in (429, 503) and response.headers.get("Retry-After"):
            try:
                retry_after = float(response.headers["Retry-After"])
            except ValueError:
                retry_after = None
            return RateLimited(text, retry_after=retry_after)
        if status == 429:
            return RateLimited(text)
        if status in (401, 403):
            return AuthError(text)
        if status >= 500:
            return TransientNetwork(text)
        return ProviderProtocolError(text)

    # ------------------------------------------------------------------
    def fetch_page(
        self,
        account: Account,
        folder: str,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> MessagePage:
        headers = {"Prefer": f"odata.maxpagesize={page_size}"}
        if page_token:
            data = self._request(account, "GET", page_token, headers=headers)
        elif cursor:
            data = self._request(account, "GET", cursor, headers=headers)
        else:
            data = self._request(
                account,
                "GET",
                f"{self._user_path(account)}/mailFolders/{folder}/messages/delta",
                params={"$select": SELECT_FIELDS},
                headers=headers,
            )

        if "value" not in data:
            raise ProviderProtocolError("Graph delta response has no 'value' field")
        entries = [
            self._parse_message(item, account, folder)
            for item in data["value"]
            if "@removed" not in item
        ]
        next_link = data.get("@odata.nextLink")
        delta_link = data.get("@odata.deltaLink")
        if not next_link and not delta_link:
            raise ProviderProtocolError("Graph delta response has neither nextLink nor deltaLink")
        logger.info(
            "Graph delta page for %s/%s: %d message(s), more=%s",
            account.email_address, folder, len(entries), bool(next_link),
        )
        return MessagePage(
            messages=entries,
            next_page_token=next_link,
            new_cursor=delta_link,
            checkpoint=next_link or delta_link,
        )

    def _parse_message(self, msg: Dict[str, Any], account: Account, folder: str) -> MessageIndexEntry:
        """Parse a Graph message resource into an index entry."""
        sender = ((msg.get("from") or {}).get("emailAddress") or {}).get("address")
        sender = sender.lower() if sender else None
        recipients: List[str] = []
        for key in ("toRecipients", "ccRecipients"):
            for recipient in msg.get(key) or []:
                address = (recipient.get("emailAddress") or {}).get("address")
                if address:
                    recipients.append(address.lower())

        if folder.lower() in SENT_FOLDERS:
            direction = Direction.SENT
        else:
            direction = resolve_direction(sender, account.email_address)

        return MessageIndexEntry(
            account_id=account.id,
            user_id=account.user_id,
            message_id=msg["id"],
            folder=folder,
            subject=msg.get("subject"),
            sender=sender,
            recipients=recipients,
            direction=direction,
            thread_id=msg.get("conversationId"),
            sent_at=parse_iso_datetime(msg.get("sentDateTime")),
            received_at=parse_iso_datetime(msg.get("receivedDateTime")),
            has_attachments=bool(msg.get("hasAttachments")),
            is_read=bool(msg.get("isRead")),
            preview=(msg.get("bodyPreview") or "")[:500] or None,
        )

    # ------------------------------------------------------------------
    def fetch_body(self, account: Account, message_id: str, folder: Optional[str] = None) -> MessageBody:
        data = self._request(
            account,
            "GET",
            f"{self._user_path(account)}/messages/{message_id}",
            params={"$select": "body,bodyPreview"},
        )
        body = data.get("body") or {}
        content = body.get("content")
        if (body.get("contentType") or "").lower() == "html":
            html, text = content, data.get("bodyPreview")
        else:
            html, text = None, content
        return MessageBody(
            account_id=account.id,
            message_id=message_id,
            text=text,
            html=html,
            fetched_at=utcnow(),
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _format_expiry(expires_at: datetime) -> str:
        return expires_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")

    def subscribe(
        self,
        account: Account,
        folder: str,
        notification_url: Optional[str],
        client_state: str,
        expires_at: datetime,
    ) -> Subscription:
        if not notification_url:
            raise SubscriptionError("Graph subscriptions need a public notification URL")
        data = self._request(
            account,
            "POST",
            "/subscriptions",
            json_data={
                "changeType": "created",
                "notificationUrl": notification_url,
                "resource": f"{self._user_path(account).lstrip('/')}/mailFolders('{folder}')/messages",
                "expirationDateTime": self._format_expiry(expires_at),
                "clientState": client_state,
            },
        )
        if not data.get("id"):
            raise SubscriptionError(f"Graph subscription for {account.email_address} returned no id")
        logger.info("Graph subscription %s created for %s/%s", data["id"], account.email_address, folder)
        return Subscription(
            id=data["id"],
            folder=folder,
            expires_at=parse_iso_datetime(data.get("expirationDateTime")) or expires_at,
            client_state=client_state,
        )

    def renew(self, account: Account, subscription: Subscription, expires_at: datetime) -> Subscription:
        data = self._request(
            account,
            "PATCH",
            f"/subscriptions/{subscription.id}",
            json_data={"expirationDateTime": self._format_expiry(expires_at)},
        )
        logger.info("Graph subscription %s renewed for %s", subscription.id, account.email_address)
        return Subscription(
            id=subscription.id,
            folder=subscription.folder,
            expires_at=parse_iso_datetime(data.get("expirationDateTime")) or expires_at,
            client_state=subscription.client_state,
        )

    def unsubscribe(self, account: Account, subscription_id: str) -> None:
        try:
            self._request(account, "DELETE", f"/subscriptions/{subscription_id}")
        except ProviderProtocolError as exc:
            # Already expired or deleted on the Graph side
            logger.info("Graph subscription %s not deleted: %s", subscription_id, exc)
