"""
Tests for the session registry: ids, admission, expiry and teardown.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from server.errors import InvalidSessionId, SessionExpired, SessionFull, SessionNotFound
from server.sessions import (
    Role,
    SessionRegistry,
    SessionState,
    generate_session_id,
    is_valid_session_id,
)

EXPIRY = timedelta(hours=24)


class FakeClock:
    """Manually advanced clock"""

    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(expiry=EXPIRY, clock=clock)


def test_session_id_shape_and_uniqueness():
    """10,000 ids, all well-formed, no duplicates"""
    ids = [generate_session_id() for _ in range(10000)]
    assert all(len(i) == 43 and is_valid_session_id(i) for i in ids)
    assert len(set(ids)) == len(ids)


@pytest.mark.parametrize("token", [
    "",
    "short",
    "a" * 42,
    "a" * 44,
    "a" * 42 + "=",
    "a" * 42 + "/",
    "a" * 42 + "+",
    None,
    12345,
])
def test_malformed_tokens_rejected(registry, token):
    assert not is_valid_session_id(token)
    with pytest.raises(InvalidSessionId):
        registry.admit(token, "conn-a")
    assert not registry.can_relay(token)


def test_create_starts_empty(registry):
    session_id = registry.create()
    assert session_id in registry
    assert registry.participants(session_id) == frozenset()
    assert registry.state(session_id) is SessionState.CREATED


def test_admission_roles_and_capacity(registry):
    session_id = registry.create()

    assert registry.admit(session_id, "conn-a") is Role.INITIATOR
    assert registry.state(session_id) is SessionState.AWAITING_PEER

    assert registry.admit(session_id, "conn-b") is Role.JOINER
    assert registry.state(session_id) is SessionState.FULL

    with pytest.raises(SessionFull):
        registry.admit(session_id, "conn-c")
    assert registry.participants(session_id) == {"conn-a", "conn-b"}


def test_admit_unknown_session(registry):
    with pytest.raises(SessionNotFound):
        registry.admit(generate_session_id(), "conn-a")


def test_full_session_can_still_relay(registry):
    session_id = registry.create()
    registry.admit(session_id, "conn-a")
    registry.admit(session_id, "conn-b")
    assert registry.can_relay(session_id)


def test_expiry_boundary(registry, clock):
    """Valid just before the horizon, invalid exactly at it"""
    session_id = registry.create()
    registry.admit(session_id, "conn-a")
    registry.admit(session_id, "conn-b")

    clock.advance(EXPIRY - timedelta(microseconds=1))
    assert registry.can_relay(session_id)

    clock.advance(timedelta(microseconds=1))
    assert not registry.can_relay(session_id)
    assert session_id not in registry


def test_expired_admission_evicts(registry, clock):
    session_id = registry.create()
    clock.advance(EXPIRY + timedelta(seconds=1))

    with pytest.raises(SessionExpired):
        registry.admit(session_id, "conn-a")
    assert session_id not in registry
    with pytest.raises(SessionNotFound):
        registry.admit(session_id, "conn-a")


def test_touch_does_not_extend_expiry(registry, clock):
    session_id = registry.create()
    registry.admit(session_id, "conn-a")
    created = registry.last_activity(session_id)

    clock.advance(EXPIRY - timedelta(minutes=1))
    registry.touch(session_id)
    assert registry.last_activity(session_id) > created

    clock.advance(timedelta(minutes=2))
    assert not registry.can_relay(session_id)


def test_remove_keeps_session_until_empty(registry):
    session_id = registry.create()
    registry.admit(session_id, "conn-a")
    registry.admit(session_id, "conn-b")

    assert registry.remove(session_id, "conn-b") is False
    assert session_id in registry
    assert registry.state(session_id) is SessionState.AWAITING_PEER

    assert registry.remove(session_id, "conn-a") is True
    assert session_id not in registry
    assert registry.remove(session_id, "conn-a") is False


def test_freed_slot_can_be_reused(registry):
    session_id = registry.create()
    registry.admit(session_id, "conn-a")
    registry.admit(session_id, "conn-b")
    registry.remove(session_id, "conn-b")
    assert registry.admit(session_id, "conn-c") is Role.JOINER


def test_sweep_evicts_only_expired(registry, clock):
    old = registry.create()
    registry.admit(old, "conn-a")
    clock.advance(timedelta(hours=12))
    young = registry.create()
    untouched = registry.create()

    clock.advance(timedelta(hours=12))
    assert registry.sweep() == 1
    assert old not in registry
    assert young in registry and untouched in registry

    clock.advance(timedelta(hours=12))
    assert registry.sweep() == 2
    assert len(registry) == 0


def test_run_sweeper_cancels_cleanly(registry, clock):
    async def scenario():
        registry.create()
        clock.advance(EXPIRY)
        task = asyncio.create_task(registry.run_sweeper(0.01))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if len(registry) == 0:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert len(registry) == 0


def test_concurrent_admission_assigns_one_initiator(registry):
    """Threads racing to join never produce two initiators or a third member"""
    session_id = registry.create()
    results = []
    barrier = threading.Barrier(8)

    def join(n):
        barrier.wait()
        try:
            results.append(registry.admit(session_id, f"conn-{n}"))
        except SessionFull:
            results.append("full")

    threads = [threading.Thread(target=join, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(Role.INITIATOR) == 1
    assert results.count(Role.JOINER) == 1
    assert results.count("full") == 6
    assert len(registry.participants(session_id)) == 2


def test_rejects_non_positive_expiry():
    with pytest.raises(ValueError):
        SessionRegistry(expiry=timedelta(0))
