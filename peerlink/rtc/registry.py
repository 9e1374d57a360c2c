"""Registry of negotiation sessions, one per remote peer."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterator, Optional, Set

from .errors import RoleConflictError
from .session import CONNECTED, DISCONNECTED, NegotiationSession, TERMINAL_STATES


logger = logging.getLogger(__name__)


SessionFactory = Callable[[str, str], NegotiationSession]  # (peer_id, role)


class SessionView:
    """Lazy, restartable view over the registry's active sessions.

    Each iteration walks a snapshot taken when that iteration starts, so the
    registry may be mutated while a view is being consumed.
    """

    def __init__(self, sessions: Dict[str, NegotiationSession]):
        self._sessions = sessions

    def __iter__(self) -> Iterator[NegotiationSession]:
        for session in list(self._sessions.values()):
            yield session

    def __len__(self) -> int:
        return len(self._sessions)


class SessionRegistry:
    def __init__(self, factory: SessionFactory, *, cleanup_grace_period: Optional[float] = 5.0):
        self._factory = factory
        self._cleanup_grace_period = cleanup_grace_period
        self._sessions: Dict[str, NegotiationSession] = {}
        self._cleanup_tasks: Set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, peer_id: str) -> Optional[NegotiationSession]:
        return self._sessions.get(peer_id)

    def all(self) -> SessionView:
        return SessionView(self._sessions)

    async def get_or_create(self, peer_id: str, role: str) -> NegotiationSession:
        async with self._lock:
            existing = self._sessions.get(peer_id)
            if existing is not None:
                if existing.role != role:
                    raise RoleConflictError(peer_id, existing.role, role)
                return existing
            return self._create_locked(peer_id, role)

    async def replace(self, peer_id: str, role: str) -> NegotiationSession:
        async with self._lock:
            old = self._sessions.pop(peer_id, None)
            session = self._create_locked(peer_id, role)
        if old is not None:
            logger.info("rtc replacing session peer_id=%s %s -> %s", peer_id, old.role, role)
            await old.close()
        return session

    async def remove(self, peer_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(peer_id, None)
        if session is not None:
            logger.debug("rtc removing session peer_id=%s", peer_id)
            await session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        logger.info("rtc closing all sessions count=%s", len(sessions))
        for session in sessions:
            await session.close()
        for task in list(self._cleanup_tasks):
            task.cancel()

    async def fail_negotiating(self, reason: str) -> int:
        """Fail every session that cannot finish negotiating (e.g. transport lost)."""

        failed = 0
        for session in self.all():
            if session.is_terminal or session.connection_state in (CONNECTED, DISCONNECTED):
                continue
            await session.mark_failed(reason)
            failed += 1
        return failed

    def _create_locked(self, peer_id: str, role: str) -> NegotiationSession:
        session = self._factory(peer_id, role)
        session.add_state_listener(self._on_session_state)
        self._sessions[peer_id] = session
        logger.debug("rtc created session peer_id=%s role=%s", peer_id, role)
        return session

    async def _on_session_state(self, session: NegotiationSession, state: str) -> None:
        if state not in TERMINAL_STATES or self._cleanup_grace_period is None:
            return
        if self._sessions.get(session.peer_id) is not session:
            return
        task = asyncio.create_task(self._cleanup_later(session), name=f"session-cleanup-{session.peer_id}")
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _cleanup_later(self, session: NegotiationSession) -> None:
        await asyncio.sleep(self._cleanup_grace_period or 0)
        async with self._lock:
            # a newer session may have taken this peer's slot meanwhile
            if self._sessions.get(session.peer_id) is not session:
                return
            del self._sessions[session.peer_id]
        logger.info("rtc session cleaned up peer_id=%s state=%s", session.peer_id, session.connection_state)
        await session.close()
