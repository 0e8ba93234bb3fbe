"""Shared fixtures for the sync engine tests."""

from __future__ import annotations

import pytest

from mailsync.email.content_cache import ContentCache
from mailsync.email.index_writer import IndexWriter
from mailsync.email.models import Account, ProviderKind
from mailsync.email.orchestrator import SyncOrchestrator
from mailsync.email.sync_state import SyncStateStore

from tests.fakes import Clock, InMemorySyncRepository, ScriptedConnector, StaticCredentials


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def repo() -> InMemorySyncRepository:
    return InMemorySyncRepository()


@pytest.fixture
def account(repo: InMemorySyncRepository) -> Account:
    return repo.add_account(
        Account(
            id="acct-1",
            user_id="user-1",
            provider=ProviderKind.IMAP,
            email_address="owner@example.com",
            folders=["INBOX"],
        )
    )


@pytest.fixture
def credentials() -> StaticCredentials:
    return StaticCredentials()


@pytest.fixture
def connector(credentials: StaticCredentials) -> ScriptedConnector:
    return ScriptedConnector(credentials)


@pytest.fixture
def state_store(repo: InMemorySyncRepository, clock: Clock) -> SyncStateStore:
    return SyncStateStore(repo, lock_timeout_seconds=900, clock=clock)


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def orchestrator(repo, state_store, connector, credentials, clock, sleeps) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo,
        state_store,
        IndexWriter(repo),
        lambda account: connector,
        credentials,
        page_size=2,
        max_retries=3,
        backoff_base_seconds=1.0,
        backoff_max_seconds=8.0,
        sleep=sleeps.append,
        clock=clock,
    )


@pytest.fixture
def content_cache(repo, connector) -> ContentCache:
    return ContentCache(repo, lambda account: connector)
