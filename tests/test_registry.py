"""Tests for SessionRegistry."""

import asyncio

import pytest

from peerlink.rtc.connection import ConnectionStateChanged
from peerlink.rtc.errors import RoleConflictError
from peerlink.rtc.registry import SessionRegistry
from peerlink.rtc.session import CALLEE, CALLER, CLOSED, FAILED


@pytest.fixture
def created():
    return []


@pytest.fixture
def registry_factory(make_session, created):
    def _factory(peer_id, role):
        session = make_session(peer_id, role)
        created.append(session)
        return session

    def _make(**kwargs):
        return SessionRegistry(_factory, **kwargs)

    return _make


@pytest.mark.asyncio
async def test_one_session_per_peer_under_concurrency(registry_factory, created):
    registry = registry_factory()

    sessions = await asyncio.gather(*(registry.get_or_create("B", CALLER) for _ in range(5)))

    assert len(created) == 1
    assert all(s is sessions[0] for s in sessions)
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_role_conflict(registry_factory):
    registry = registry_factory()
    await registry.get_or_create("B", CALLER)

    with pytest.raises(RoleConflictError) as exc:
        await registry.get_or_create("B", CALLEE)

    assert exc.value.existing == CALLER
    assert registry.get("B").role == CALLER


@pytest.mark.asyncio
async def test_remove(registry_factory):
    registry = registry_factory()
    session = await registry.get_or_create("B", CALLER)

    await registry.remove("B")
    await registry.remove("B")
    await registry.remove("never-seen")

    assert "B" not in registry
    assert session.connection_state == CLOSED
    assert session.connection.closed


@pytest.mark.asyncio
async def test_all_is_restartable(registry_factory):
    registry = registry_factory()
    await registry.get_or_create("B", CALLER)
    await registry.get_or_create("C", CALLEE)

    view = registry.all()

    assert sorted(s.peer_id for s in view) == ["B", "C"]
    assert sorted(s.peer_id for s in view) == ["B", "C"]
    assert len(view) == 2


@pytest.mark.asyncio
async def test_all_tolerates_removal_while_iterating(registry_factory):
    registry = registry_factory()
    for peer in ("B", "C", "D"):
        await registry.get_or_create(peer, CALLER)

    for session in registry.all():
        await registry.remove(session.peer_id)

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_replace(registry_factory):
    registry = registry_factory()
    old = await registry.get_or_create("B", CALLER)

    new = await registry.replace("B", CALLEE)

    assert old.closed
    assert registry.get("B") is new
    assert new.role == CALLEE


@pytest.mark.asyncio
async def test_close_all(registry_factory, created):
    registry = registry_factory()
    await registry.get_or_create("B", CALLER)
    await registry.get_or_create("C", CALLER)

    await registry.close_all()

    assert len(registry) == 0
    assert all(s.closed for s in created)


@pytest.mark.asyncio
async def test_failed_session_is_cleaned_up_after_grace(registry_factory):
    registry = registry_factory(cleanup_grace_period=0.01)
    session = await registry.get_or_create("B", CALLER)
    await session.create_offer()

    await session.connection.emit(ConnectionStateChanged("failed"))
    assert registry.get("B") is session
    await asyncio.sleep(0.05)

    assert "B" not in registry
    assert session.closed


@pytest.mark.asyncio
async def test_cleanup_spares_replacement(registry_factory):
    registry = registry_factory(cleanup_grace_period=0.02)
    old = await registry.get_or_create("B", CALLER)
    await old.mark_failed("test")

    new = await registry.replace("B", CALLEE)
    await asyncio.sleep(0.05)

    assert registry.get("B") is new
    assert not new.closed


@pytest.mark.asyncio
async def test_no_cleanup_without_grace_period(registry_factory):
    registry = registry_factory(cleanup_grace_period=None)
    session = await registry.get_or_create("B", CALLER)
    await session.mark_failed("test")

    await asyncio.sleep(0.01)

    assert registry.get("B") is session


@pytest.mark.asyncio
async def test_fail_negotiating(registry_factory):
    registry = registry_factory(cleanup_grace_period=None)
    negotiating = await registry.get_or_create("B", CALLER)
    await negotiating.create_offer()
    connected = await registry.get_or_create("C", CALLER)
    await connected.create_offer()
    await connected.connection.emit(ConnectionStateChanged("connected"))

    count = await registry.fail_negotiating("transport closed")

    assert count == 1
    assert negotiating.connection_state == FAILED
    assert connected.connection_state != FAILED
