"""Tests for the sync lock and cursor bookkeeping."""

from __future__ import annotations

from mailsync.email.sync_state import SyncStateStore


def test_lock_is_exclusive_until_released(state_store, account):
    owner = state_store.acquire_lock(account.id, "INBOX")

    assert owner is not None
    assert state_store.acquire_lock(account.id, "INBOX") is None

    state_store.release(account.id, "INBOX", owner)
    assert state_store.acquire_lock(account.id, "INBOX") is not None


def test_locks_are_per_folder(state_store, account):
    assert state_store.acquire_lock(account.id, "INBOX") is not None
    assert state_store.acquire_lock(account.id, "Sent") is not None


def test_stale_lock_is_reclaimed_after_timeout(state_store, account, clock):
    """A crashed holder's lock can be taken once it stops heartbeating."""
    crashed = state_store.acquire_lock(account.id, "INBOX")
    clock.advance(seconds=899)
    assert state_store.acquire_lock(account.id, "INBOX") is None

    clock.advance(seconds=2)
    assert state_store.is_stale(state_store.get_state(account.id, "INBOX"))
    survivor = state_store.acquire_lock(account.id, "INBOX")

    assert survivor is not None and survivor != crashed
    assert state_store.heartbeat(account.id, "INBOX", crashed) is False
    assert state_store.heartbeat(account.id, "INBOX", survivor) is True


def test_heartbeat_keeps_lock_fresh(state_store, account, clock):
    owner = state_store.acquire_lock(account.id, "INBOX")
    for _ in range(3):
        clock.advance(seconds=600)
        assert state_store.heartbeat(account.id, "INBOX", owner)

    assert state_store.acquire_lock(account.id, "INBOX") is None


def test_release_by_non_owner_keeps_lock(state_store, account):
    owner = state_store.acquire_lock(account.id, "INBOX")

    state_store.release(account.id, "INBOX", "someone-else")

    state = state_store.get_state(account.id, "INBOX")
    assert state.in_progress and state.lock_owner == owner


def test_cursor_round_trip(repo, account, clock):
    store = SyncStateStore(repo, clock=clock)
    assert store.get_cursor(account.id, "INBOX") is None

    store.set_cursor(account.id, "INBOX", "42:7")

    assert store.get_cursor(account.id, "INBOX") == "42:7"
    assert store.get_state(account.id, "INBOX").updated_at == clock()
