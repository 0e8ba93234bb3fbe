"""Tests for GmailConnector paging, normalization and watch handling."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime
from typing import Any, Dict
from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from mailsync.email.connectors import gmail_connector as gmail_module
from mailsync.email.connectors.gmail_connector import GmailConnector
from mailsync.email.errors import (
    AuthError,
    CursorExpired,
    ProviderProtocolError,
    RateLimited,
    SubscriptionError,
    TransientNetwork,
)
from mailsync.email.models import Account, Direction, ProviderKind

from tests.fakes import StaticCredentials


class FakeResponse(dict):
    """Minimal stand-in for the httplib2 response attached to ``HttpError``."""

    def __init__(self, status: int, reason: str = "error", **headers: str) -> None:
        super().__init__(headers)
        self.status = status
        self.reason = reason


def http_error(status: int, reasons=(), **headers: str) -> HttpError:
    body = {"error": {"code": status, "message": "failed", "errors": [{"reason": r} for r in reasons]}}
    return HttpError(FakeResponse(status, **headers), json.dumps(body).encode("utf-8"))


def metadata(msg_id: str, labels=("INBOX", "UNREAD"), sender: str = "Alice <Alice@Example.com>") -> Dict[str, Any]:
    return {
        "id": msg_id,
        "threadId": f"thread-{msg_id}",
        "labelIds": list(labels),
        "snippet": "Hi there",
        "internalDate": "1772442000000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "owner@gmail.com"},
                {"name": "Cc", "value": "Bob <BOB@example.com>"},
                {"name": "Subject", "value": "Hello"},
                {"name": "Date", "value": "Mon, 02 Mar 2026 10:00:00 +0100"},
            ],
        },
    }


@pytest.fixture
def service(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    service = MagicMock()
    monkeypatch.setattr(gmail_module, "build", lambda *a, **k: service)
    return service


@pytest.fixture
def messages_api(service: MagicMock) -> MagicMock:
    api = service.users.return_value.messages.return_value
    store = {"a": metadata("a"), "b": metadata("b", labels=("SENT",), sender="owner@gmail.com")}

    def get(**kwargs):
        call = MagicMock()
        if kwargs["id"] in store:
            call.execute.return_value = store[kwargs["id"]]
        else:
            call.execute.side_effect = http_error(404)
        return call

    api.get.side_effect = get
    return api


@pytest.fixture
def gmail_account() -> Account:
    return Account(
        id="gmail-1",
        user_id="user-3",
        provider=ProviderKind.GMAIL,
        email_address="Owner@gmail.com",
        folders=["INBOX"],
    )


@pytest.fixture
def gmail() -> GmailConnector:
    return GmailConnector(StaticCredentials(MagicMock()), topic_name="projects/demo/topics/mail")


def test_full_sync_records_start_history_and_pages(service, messages_api, gmail_account, gmail):
    service.users.return_value.getProfile.return_value.execute.return_value = {"historyId": 500}
    messages_api.list.return_value.execute.return_value = {
        "messages": [{"id": "a"}, {"id": "b"}],
        "nextPageToken": "tok2",
    }

    page = gmail.fetch_page(gmail_account, "INBOX", None, page_size=1000)

    messages_api.list.assert_called_with(userId="me", labelIds=["INBOX"], maxResults=500)
    assert page.next_page_token == "500:tok2"
    assert page.new_cursor is None
    assert page.checkpoint == "full:500:tok2"

    received, sent = page.messages
    assert received.message_id == "a"
    assert received.sender == "alice@example.com"
    assert received.recipients == ["owner@gmail.com", "bob@example.com"]
    assert received.direction is Direction.RECEIVED
    assert received.is_read is False
    assert received.has_attachments is True
    assert received.thread_id == "thread-a"
    assert received.preview == "Hi there"
    assert received.sent_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert received.received_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert sent.direction is Direction.SENT


def test_full_sync_continuation_keeps_start_history(service, messages_api, gmail_account, gmail):
    messages_api.list.return_value.execute.return_value = {"messages": [{"id": "a"}]}

    page = gmail.fetch_page(gmail_account, "INBOX", None, page_token="500:tok2", page_size=10)

    service.users.return_value.getProfile.assert_not_called()
    messages_api.list.assert_called_with(userId="me", labelIds=["INBOX"], maxResults=10, pageToken="tok2")
    assert page.next_page_token is None
    assert page.new_cursor == "500"


def test_truncated_full_sync_resumes_from_checkpoint(service, messages_api, gmail_account, gmail):
    messages_api.list.return_value.execute.return_value = {"messages": [{"id": "a"}], "nextPageToken": "tok3"}

    page = gmail.fetch_page(gmail_account, "INBOX", "full:500:tok2", page_size=10)

    service.users.return_value.getProfile.assert_not_called()
    messages_api.list.assert_called_with(userId="me", labelIds=["INBOX"], maxResults=10, pageToken="tok2")
    assert [m.message_id for m in page.messages] == ["a"]
    assert page.next_page_token == "500:tok3"
    assert page.new_cursor is None
    assert page.checkpoint == "full:500:tok3"

    messages_api.list.return_value.execute.return_value = {"messages": []}
    last = gmail.fetch_page(gmail_account, "INBOX", "full:500:tok2", page_token=page.next_page_token)

    messages_api.list.assert_called_with(userId="me", labelIds=["INBOX"], maxResults=100, pageToken="tok3")
    assert last.new_cursor == "500"
    assert last.checkpoint == "500"


def test_stale_resume_token_is_expired_cursor(messages_api, gmail_account, gmail):
    messages_api.list.return_value.execute.side_effect = http_error(400, reasons=["invalidArgument"])

    with pytest.raises(CursorExpired):
        gmail.fetch_page(gmail_account, "INBOX", "full:500:tok2")


def test_history_delta_filters_label_and_duplicates(service, messages_api, gmail_account, gmail):
    history_api = service.users.return_value.history.return_value
    history_api.list.return_value.execute.return_value = {
        "history": [
            {"id": "601", "messagesAdded": [
                {"message": {"id": "a", "labelIds": ["INBOX"]}},
                {"message": {"id": "spam", "labelIds": ["SPAM"]}},
            ]},
            {"id": "605", "messagesAdded": [{"message": {"id": "a", "labelIds": ["INBOX"]}}]},
        ],
        "historyId": "610",
    }

    page = gmail.fetch_page(gmail_account, "INBOX", "600")

    history_api.list.assert_called_with(
        userId="me", startHistoryId="600", labelId="INBOX", historyTypes=["messageAdded"], maxResults=100
    )
    assert [m.message_id for m in page.messages] == ["a"]
    assert page.new_cursor == "610"
    assert page.checkpoint == "605"


def test_history_without_changes_keeps_cursor(service, gmail_account, gmail):
    service.users.return_value.history.return_value.list.return_value.execute.return_value = {}

    page = gmail.fetch_page(gmail_account, "INBOX", "600")

    assert page.messages == []
    assert page.new_cursor == "600"


def test_expired_history_id_raises_cursor_expired(service, gmail_account, gmail):
    service.users.return_value.history.return_value.list.return_value.execute.side_effect = http_error(404)

    with pytest.raises(CursorExpired):
        gmail.fetch_page(gmail_account, "INBOX", "1")


def test_message_deleted_before_metadata_fetch_is_skipped(service, messages_api, gmail_account, gmail):
    service.users.return_value.getProfile.return_value.execute.return_value = {"historyId": 1}
    messages_api.list.return_value.execute.return_value = {"messages": [{"id": "gone"}, {"id": "a"}]}

    page = gmail.fetch_page(gmail_account, "INBOX", None)

    assert [m.message_id for m in page.messages] == ["a"]


@pytest.mark.parametrize(
    "error, expected",
    [
        (http_error(429, **{"retry-after": "12"}), RateLimited),
        (http_error(403, reasons=["userRateLimitExceeded"]), RateLimited),
        (http_error(401), AuthError),
        (http_error(403, reasons=["insufficientPermissions"]), AuthError),
        (http_error(503), TransientNetwork),
        (http_error(400), ProviderProtocolError),
        (RefreshError("invalid_grant"), AuthError),
        (ConnectionResetError("reset"), TransientNetwork),
    ],
)
def test_provider_errors_are_classified(service, gmail_account, gmail, error, expected):
    service.users.return_value.getProfile.return_value.execute.side_effect = error

    with pytest.raises(expected):
        gmail.fetch_page(gmail_account, "INBOX", None)


def test_rate_limit_carries_retry_after(service, gmail_account, gmail):
    service.users.return_value.getProfile.return_value.execute.side_effect = http_error(429, **{"retry-after": "12"})

    with pytest.raises(RateLimited) as excinfo:
        gmail.fetch_page(gmail_account, "INBOX", None)

    assert excinfo.value.retry_after == 12.0


def test_fetch_body_decodes_raw_message(service, gmail_account, gmail):
    raw = (
        b"From: alice@example.com\r\nSubject: Hi\r\nMIME-Version: 1.0\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n\r\nHello Bob\r\n"
    )
    api = service.users.return_value.messages.return_value
    api.get.return_value.execute.return_value = {"raw": base64.urlsafe_b64encode(raw).decode("ascii")}

    body = gmail.fetch_body(gmail_account, "a")

    api.get.assert_called_with(userId="me", id="a", format="raw")
    assert body.text.strip() == "Hello Bob"
    assert body.html is None


def test_subscribe_starts_watch(service, gmail_account, gmail):
    service.users.return_value.watch.return_value.execute.return_value = {
        "historyId": "700",
        "expiration": "1772928000000",
    }

    sub = gmail.subscribe(gmail_account, "INBOX", None, "state", datetime(2026, 3, 9, tzinfo=UTC))

    service.users.return_value.watch.assert_called_with(
        userId="me",
        body={"topicName": "projects/demo/topics/mail", "labelIds": ["INBOX"], "labelFilterBehavior": "INCLUDE"},
    )
    assert sub.id == "gmail-watch:owner@gmail.com"
    assert sub.expires_at == datetime(2026, 3, 8, tzinfo=UTC)
    assert sub.folder == "INBOX"


def test_subscribe_requires_topic(gmail_account):
    connector = GmailConnector(StaticCredentials(MagicMock()))

    with pytest.raises(SubscriptionError):
        connector.subscribe(gmail_account, "INBOX", None, "state", datetime(2026, 3, 9, tzinfo=UTC))


def test_unsubscribe_stops_watch(service, gmail_account, gmail):
    gmail.unsubscribe(gmail_account, "gmail-watch:owner@gmail.com")

    service.users.return_value.stop.assert_called_once_with(userId="me")
