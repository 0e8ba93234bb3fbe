"""Tests for :class:`PostgreSQLSyncRepository` against a mocked connection pool."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from psycopg2.extras import Json

from mailsync.core import postgres_repository as repo_module
from mailsync.core.postgres_manager import PostgreSQLManager
from mailsync.core.postgres_repository import ACCOUNT_COLUMNS, PostgreSQLSyncRepository
from mailsync.email.models import (
    DeliveryMode,
    Direction,
    JobState,
    LearningJob,
    MessageBody,
    ProviderKind,
)

from tests.fakes import make_entry

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def cursor():
    cur = MagicMock()
    cur.rowcount = 1
    cur.fetchone.return_value = None
    cur.fetchall.return_value = []
    return cur


@pytest.fixture
def pool(cursor):
    pool = MagicMock()
    conn = pool.getconn.return_value
    conn.cursor.return_value.__enter__.return_value = cursor
    return pool


@pytest.fixture
def repository(pool):
    return PostgreSQLSyncRepository(PostgreSQLManager(pool))


def account_row(**overrides):
    row = {col: None for col in ACCOUNT_COLUMNS}
    row.update(
        id="graph-1",
        user_id="user-2",
        provider="graph",
        email_address="owner@contoso.com",
        settings={"push_enabled": True},
        folders=["inbox"],
        is_active=True,
        sync_enabled=True,
        polling_interval_seconds=300,
        delivery_mode="push",
        subscription_id="sub-1",
        needs_reauth=False,
    )
    row.update(overrides)
    return row


def test_get_account_maps_enums(repository, cursor):
    cursor.fetchone.return_value = account_row()

    account = repository.get_account("graph-1")

    assert account.provider is ProviderKind.GRAPH
    assert account.delivery_mode is DeliveryMode.PUSH
    assert account.settings == {"push_enabled": True}
    assert cursor.execute.call_args.args[1] == ["graph-1"]


def test_get_account_missing(repository):
    assert repository.get_account("nope") is None


def test_connections_are_returned_to_pool(repository, pool):
    repository.get_account("graph-1")

    pool.putconn.assert_called_once_with(pool.getconn.return_value)


def test_conditional_update_binds_updates_then_expectations(repository, cursor):
    changed = repository.update_account_if(
        "graph-1",
        {"delivery_mode": DeliveryMode.POLL, "subscription_id": None},
        {"delivery_mode": DeliveryMode.PUSH, "subscription_id": "sub-2"},
    )

    assert changed is True
    assert cursor.execute.call_args.args[1] == ["push", "sub-2", "graph-1", "poll", None]


def test_conditional_update_reports_lost_race(repository, cursor):
    cursor.rowcount = 0

    assert repository.update_account_if("graph-1", {"subscription_id": "sub-1"}, {"last_error": None}) is False


def test_unknown_account_fields_are_rejected(repository, cursor):
    with pytest.raises(ValueError):
        repository.update_account("graph-1", {"password": "x"})
    with pytest.raises(ValueError):
        repository.update_account_if("graph-1", {"nope": 1}, {"last_error": None})
    cursor.execute.assert_not_called()


def test_update_account_adapts_json_and_skips_empty(repository, cursor):
    repository.update_account("graph-1", {})
    cursor.execute.assert_not_called()

    repository.update_account("graph-1", {"folders": ["inbox", "sentitems"], "last_error": "boom"})

    params = cursor.execute.call_args.args[1]
    assert isinstance(params[0], Json)
    assert params[1:] == ["boom", "graph-1"]


def test_find_account_by_address_uses_provider_value(repository, cursor):
    repository.find_account_by_address(ProviderKind.GMAIL, "Owner@Gmail.com")

    assert cursor.execute.call_args.args[1] == ["gmail", "Owner@Gmail.com"]


@pytest.mark.parametrize("rowcount, expected", [(1, True), (0, False)])
def test_try_lock_is_a_single_conditional_update(repository, cursor, rowcount, expected):
    cursor.rowcount = rowcount
    stale = datetime(2026, 3, 2, 8, 30, tzinfo=UTC)

    assert repository.try_lock("acct-1", "INBOX", "owner-1", NOW, stale) is expected

    insert_call, update_call = cursor.execute.call_args_list
    assert "ON CONFLICT" in insert_call.args[0]
    assert update_call.args[1] == ["owner-1", NOW, "acct-1", "INBOX", stale]


def test_release_lock_only_for_owner(repository, cursor):
    cursor.rowcount = 0

    assert repository.release_lock("acct-1", "INBOX", "someone-else") is False
    assert cursor.execute.call_args.args[1] == ["acct-1", "INBOX", "someone-else"]


def test_insert_index_entries_returns_new_ids(repository, monkeypatch):
    captured = {}

    def fake_execute_values(cur, query, values, page_size=100, fetch=False):
        captured.update(query=query, values=values, fetch=fetch)
        return [{"message_id": "m1"}]

    monkeypatch.setattr(repo_module, "execute_values", fake_execute_values)
    entries = [
        make_entry("acct-1", "m1", recipients=["a@example.com"], direction=Direction.SENT),
        make_entry("acct-1", "m2"),
    ]

    inserted = repository.insert_index_entries(entries)

    assert inserted == ["m1"]
    assert "ON CONFLICT (account_id, message_id) DO NOTHING RETURNING message_id" in captured["query"]
    assert captured["fetch"] is True
    first = captured["values"][0]
    assert first[:2] == ("acct-1", "m1")
    assert "sent" in first
    assert any(isinstance(v, Json) for v in first)


def test_insert_nothing_skips_database(repository, pool):
    assert repository.insert_index_entries([]) == []
    pool.getconn.assert_not_called()


def test_select_for_learning_filters(repository, cursor):
    repository.select_for_learning("acct-1", include_analyzed=False, since=NOW, limit=25)

    query, params = cursor.execute.call_args.args
    assert "analyzed_at IS NULL" in query
    assert params == ["acct-1", NOW, 25]

    repository.select_for_learning("acct-1", include_analyzed=True, since=None, limit=5)

    query, params = cursor.execute.call_args.args
    assert "analyzed_at IS NULL" not in query
    assert params == ["acct-1", 5]


def test_content_round_trip_mapping(repository, cursor):
    cursor.fetchone.return_value = {
        "account_id": "acct-1",
        "message_id": "m1",
        "body_text": "hello",
        "body_html": None,
        "fetched_at": NOW,
    }

    body = repository.get_content("acct-1", "m1")

    assert body == MessageBody(account_id="acct-1", message_id="m1", text="hello", html=None, fetched_at=NOW)

    cursor.rowcount = 0
    assert repository.put_content(body) is False


def test_save_job_binds_state_value(repository, cursor):
    job = LearningJob(id="job-1", account_id="acct-1", user_id="user-1", state=JobState.RUNNING, results={"a": 1})

    repository.save_job(job)

    query, params = cursor.execute.call_args.args
    assert query.startswith("UPDATE learning_jobs SET")
    assert params[-1] == "job-1"
    assert "running" in params


def test_mark_analyzed_without_ids_is_noop(repository, pool):
    repository.mark_analyzed("acct-1", [], NOW)

    pool.getconn.assert_not_called()
