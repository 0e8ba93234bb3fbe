"""Tests for GraphConnector delta paging, error mapping and subscriptions."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

import pytest
import requests

from mailsync.email.connectors.graph_connector import GraphConnector
from mailsync.email.errors import (
    AuthError,
    CursorExpired,
    ProviderProtocolError,
    RateLimited,
    SubscriptionError,
    TransientNetwork,
)
from mailsync.email.models import Account, Direction, ProviderKind, Subscription

from tests.fakes import StaticCredentials

BASE = "https://graph.microsoft.com/v1.0"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self.headers = headers or {}
        self.reason = "reason"

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    """Replays queued responses and records every request."""

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.requests: List[Dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.requests.append(
            {"method": method, "url": url, "headers": headers, "params": params, "json": json, "timeout": timeout}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def message(msg_id: str, sender: str = "Alice@Example.com", **extra: Any) -> Dict[str, Any]:
    data = {
        "id": msg_id,
        "conversationId": "conv-1",
        "subject": "Quarterly numbers",
        "from": {"emailAddress": {"address": sender, "name": "Alice"}},
        "toRecipients": [{"emailAddress": {"address": "Owner@contoso.com"}}],
        "ccRecipients": [{"emailAddress": {"address": "team@contoso.com"}}],
        "sentDateTime": "2026-03-02T08:59:00Z",
        "receivedDateTime": "2026-03-02T09:00:00Z",
        "hasAttachments": True,
        "isRead": False,
        "bodyPreview": "Numbers attached",
    }
    data.update(extra)
    return data


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def graph(session) -> GraphConnector:
    return GraphConnector(StaticCredentials("graph-token"), timeout=12, session=session)


@pytest.fixture
def graph_account() -> Account:
    return Account(
        id="graph-1",
        user_id="user-2",
        provider=ProviderKind.GRAPH,
        email_address="owner@contoso.com",
        folders=["inbox"],
    )


def test_initial_delta_round(session, graph, graph_account):
    session.queue(
        FakeResponse(payload={"value": [message("m1")], "@odata.nextLink": f"{BASE}/next?skip=1"}),
        FakeResponse(payload={
            "value": [message("m2"), {"id": "m0", "@removed": {"reason": "deleted"}}],
            "@odata.deltaLink": f"{BASE}/delta?token=abc",
        }),
    )

    first = graph.fetch_page(graph_account, "inbox", None, page_size=50)

    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == f"{BASE}/users/owner@contoso.com/mailFolders/inbox/messages/delta"
    assert request["headers"]["Authorization"] == "Bearer graph-token"
    assert request["headers"]["Prefer"] == "odata.maxpagesize=50"
    assert "$select" in request["params"]
    assert request["timeout"] == 12
    assert first.next_page_token == f"{BASE}/next?skip=1"
    assert first.new_cursor is None
    assert first.checkpoint == first.next_page_token

    entry = first.messages[0]
    assert entry.sender == "alice@example.com"
    assert entry.recipients == ["owner@contoso.com", "team@contoso.com"]
    assert entry.direction is Direction.RECEIVED
    assert entry.thread_id == "conv-1"
    assert entry.received_at == datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert entry.has_attachments is True
    assert entry.preview == "Numbers attached"

    second = graph.fetch_page(graph_account, "inbox", None, page_token=first.next_page_token)

    assert session.requests[1]["url"] == f"{BASE}/next?skip=1"
    assert [m.message_id for m in second.messages] == ["m2"]
    assert second.next_page_token is None
    assert second.new_cursor == f"{BASE}/delta?token=abc"


def test_delta_follows_stored_link(session, graph, graph_account):
    session.queue(FakeResponse(payload={"value": [], "@odata.deltaLink": f"{BASE}/delta?token=def"}))

    page = graph.fetch_page(graph_account, "inbox", f"{BASE}/delta?token=abc")

    assert session.requests[0]["url"] == f"{BASE}/delta?token=abc"
    assert page.messages == []
    assert page.new_cursor == f"{BASE}/delta?token=def"


def test_sent_items_and_own_address_are_outgoing(session, graph, graph_account):
    session.queue(FakeResponse(payload={"value": [message("s1")], "@odata.deltaLink": "d"}))
    page = graph.fetch_page(graph_account, "sentitems", None)
    assert page.messages[0].direction is Direction.SENT

    session.queue(FakeResponse(payload={"value": [message("s2", sender="OWNER@contoso.com")], "@odata.deltaLink": "d"}))
    page = graph.fetch_page(graph_account, "inbox", None)
    assert page.messages[0].direction is Direction.SENT


@pytest.mark.parametrize(
    "response, expected",
    [
        (FakeResponse(410, {"error": {"code": "SyncStateNotFound"}}), CursorExpired),
        (FakeResponse(400, {"error": {"code": "syncStateInvalid"}}), CursorExpired),
        (FakeResponse(429, {"error": {"code": "TooManyRequests"}}), RateLimited),
        (FakeResponse(401, {"error": {"code": "InvalidAuthenticationToken"}}), AuthError),
        (FakeResponse(502), TransientNetwork),
        (FakeResponse(400, {"error": {"code": "BadRequest"}}), ProviderProtocolError),
        (requests.ConnectionError("refused"), TransientNetwork),
        (requests.Timeout("slow"), TransientNetwork),
        (requests.exceptions.ChunkedEncodingError("connection broken mid-body"), TransientNetwork),
        (requests.exceptions.ContentDecodingError("bad gzip"), TransientNetwork),
        (FakeResponse(500, ["not", "an", "object"]), TransientNetwork),
    ],
)
def test_errors_are_classified(session, graph, graph_account, response, expected):
    session.queue(response)

    with pytest.raises(expected):
        graph.fetch_page(graph_account, "inbox", "cursor-link")


def test_throttling_reports_retry_after(session, graph, graph_account):
    session.queue(FakeResponse(503, {"error": {"code": "ServiceUnavailable"}}, headers={"Retry-After": "30"}))

    with pytest.raises(RateLimited) as excinfo:
        graph.fetch_page(graph_account, "inbox", None)

    assert excinfo.value.retry_after == 30.0


def test_response_without_links_is_protocol_error(session, graph, graph_account):
    session.queue(FakeResponse(payload={"value": []}))

    with pytest.raises(ProviderProtocolError):
        graph.fetch_page(graph_account, "inbox", None)


def test_fetch_body_html(session, graph, graph_account):
    session.queue(FakeResponse(payload={
        "body": {"contentType": "html", "content": "<p>Numbers</p>"},
        "bodyPreview": "Numbers",
    }))

    body = graph.fetch_body(graph_account, "m1")

    assert session.requests[0]["url"] == f"{BASE}/users/owner@contoso.com/messages/m1"
    assert body.html == "<p>Numbers</p>"
    assert body.text == "Numbers"


def test_subscribe_posts_subscription(session, graph, graph_account):
    session.queue(FakeResponse(201, {"id": "sub-9", "expirationDateTime": "2026-03-05T09:00:00.0000000Z"}))

    sub = graph.subscribe(
        graph_account, "inbox", "https://hooks.example.com/webhooks/graph", "secret",
        datetime(2026, 3, 5, 9, 0, tzinfo=UTC),
    )

    body = session.requests[0]["json"]
    assert session.requests[0]["url"] == f"{BASE}/subscriptions"
    assert body["changeType"] == "created"
    assert body["resource"] == "users/owner@contoso.com/mailFolders('inbox')/messages"
    assert body["expirationDateTime"] == "2026-03-05T09:00:00.0000000Z"
    assert body["clientState"] == "secret"
    assert sub == Subscription(
        id="sub-9", folder="inbox", expires_at=datetime(2026, 3, 5, 9, 0, tzinfo=UTC), client_state="secret"
    )


def test_subscribe_needs_notification_url(graph, graph_account):
    with pytest.raises(SubscriptionError):
        graph.subscribe(graph_account, "inbox", None, "secret", datetime(2026, 3, 5, tzinfo=UTC))


def test_renew_patches_expiry(session, graph, graph_account):
    session.queue(FakeResponse(200, {"id": "sub-9", "expirationDateTime": "2026-03-07T09:00:00Z"}))
    current = Subscription(id="sub-9", folder="inbox", expires_at=datetime(2026, 3, 5, tzinfo=UTC), client_state="s")

    renewed = graph.renew(graph_account, current, datetime(2026, 3, 7, 9, 0, tzinfo=UTC))

    assert session.requests[0]["method"] == "PATCH"
    assert session.requests[0]["url"] == f"{BASE}/subscriptions/sub-9"
    assert renewed.expires_at == datetime(2026, 3, 7, 9, 0, tzinfo=UTC)
    assert renewed.client_state == "s"


def test_unsubscribe_tolerates_missing_subscription(session, graph, graph_account):
    session.queue(FakeResponse(404, {"error": {"code": "ResourceNotFound"}}))

    graph.unsubscribe(graph_account, "sub-gone")

    assert session.requests[0]["method"] == "DELETE"
