"""Negotiation state machine for exactly one remote peer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..net import protocol
from ..net.protocol import CandidateDescriptor, SignalMessage
from .candidates import CandidateBuffer
from .connection import (
    ConnectionEvent,
    ConnectionFactory,
    ConnectionStateChanged,
    DataChannelStateChanged,
    IceConnectionStateChanged,
    IceGatheringStateChanged,
    LocalCandidate,
    PeerConnection,
)
from .errors import InvalidStateError, NegotiationError, UnexpectedAnswerError


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

# Roles
CALLER = "caller"
CALLEE = "callee"

# Local / remote description states
LOCAL_NONE = "none"
OFFER_SENT = "offer-sent"
ANSWER_SENT = "answer-sent"
REMOTE_NONE = "none"
REMOTE_SET = "set"

# Connection states
NEW = "new"
CONNECTING = "connecting"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
FAILED = "failed"
CLOSED = "closed"

TERMINAL_STATES = frozenset({FAILED, CLOSED})


class _Discarded(Exception):
    """An async step finished after the session was closed or reset."""


@dataclass
class SessionCallbacks:
    on_log: Optional[AsyncCallback] = None  # (msg: str)
    on_signal: Optional[AsyncCallback] = None  # (msg: SignalMessage)
    on_state: Optional[AsyncCallback] = None  # (peer_id: str, state: str)


StateListener = Callable[["NegotiationSession", str], Awaitable[None]]


class NegotiationSession:
    """Drives one peer's offer/answer exchange and candidate flow.

    Operations that touch the connection are serialized by a per-session
    lock. `close()` deliberately skips the lock so it can interrupt an
    outstanding step; every step re-checks the session afterwards and
    discards its result if the session was closed or reset meanwhile.
    """

    def __init__(
        self,
        peer_id: str,
        role: str,
        *,
        local_peer_id: str,
        connection_factory: ConnectionFactory,
        room_id: Optional[str] = None,
        callbacks: Optional[SessionCallbacks] = None,
        data_channel_label: Optional[str] = None,
        negotiation_timeout: Optional[float] = None,
    ):
        if role not in (CALLER, CALLEE):
            raise ValueError(f"unknown role: {role!r}")
        self.peer_id = peer_id
        self.role = role
        self.local_peer_id = local_peer_id
        self.room_id = room_id

        self.local_description_state = LOCAL_NONE
        self.remote_description_state = REMOTE_NONE
        self.connection_state = NEW

        self._callbacks = callbacks or SessionCallbacks()
        self._connection_factory = connection_factory
        self._data_channel_label = data_channel_label
        self._negotiation_timeout = negotiation_timeout

        self._remote_candidates: CandidateBuffer[CandidateDescriptor] = CandidateBuffer()
        self._local_candidates: CandidateBuffer[CandidateDescriptor] = CandidateBuffer()
        self._state_listeners: List[StateListener] = []
        self._timeout_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()
        self._closed = False

        self._connection = self._new_connection()

    # ----------------------
    # Introspection
    # ----------------------
    @property
    def connection(self) -> PeerConnection:
        return self._connection

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_terminal(self) -> bool:
        return self.connection_state in TERMINAL_STATES

    @property
    def pending_remote_candidates(self) -> List[CandidateDescriptor]:
        return list(self._remote_candidates)

    @property
    def pending_local_candidates(self) -> List[CandidateDescriptor]:
        return list(self._local_candidates)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "role": self.role,
            "local_description_state": self.local_description_state,
            "remote_description_state": self.remote_description_state,
            "connection_state": self.connection_state,
            "pending_remote_candidates": self.pending_remote_candidates,
            "pending_local_candidates": self.pending_local_candidates,
        }

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ----------------------
    # Offer / answer
    # ----------------------
    async def create_offer(self) -> Optional[SignalMessage]:
        """Generate and store the local offer.

        Returns the outbound offer, or None when the session was closed
        before the offer resolved (the offer must then not be sent).
        """

        async with self._lock:
            if self.role != CALLER:
                raise InvalidStateError(f"peer {self.peer_id}: only the caller creates offers")
            if self.remote_description_state == REMOTE_SET:
                raise InvalidStateError(f"peer {self.peer_id}: remote description already set")
            if self.connection_state != NEW or self.local_description_state != LOCAL_NONE:
                raise InvalidStateError(f"peer {self.peer_id}: cannot create offer in state {self.connection_state}")

            connection = self._connection
            if self._data_channel_label:
                connection.create_data_channel(self._data_channel_label)
            try:
                sdp = await self._step("create offer", connection, connection.create_offer())
                await self._step("set local offer", connection, connection.set_local_description("offer", sdp))
            except _Discarded:
                logger.debug("rtc offer discarded peer_id=%s", self.peer_id)
                return None

            local_sdp = connection.local_description or sdp
            self.local_description_state = OFFER_SENT
            await self._set_state(CONNECTING)
            self._arm_timeout()
            await self._log(f"Created offer for {self.peer_id}")
            return protocol.make_offer(self.room_id, self.local_peer_id, self.peer_id, local_sdp)

    async def accept_offer(self, sdp: str) -> Optional[SignalMessage]:
        async with self._lock:
            if self.role != CALLEE:
                raise InvalidStateError(f"peer {self.peer_id}: only the callee accepts offers")
            if (
                self.remote_description_state == REMOTE_SET
                or self.local_description_state != LOCAL_NONE
                or self.connection_state != NEW
            ):
                raise InvalidStateError(f"peer {self.peer_id}: offer already accepted")

            connection = self._connection
            try:
                await self._step("set remote offer", connection, connection.set_remote_description("offer", sdp))
                self.remote_description_state = REMOTE_SET
                await self._flush_locked(connection)
                answer = await self._step("create answer", connection, connection.create_answer())
                await self._step("set local answer", connection, connection.set_local_description("answer", answer))
            except _Discarded:
                logger.debug("rtc answer discarded peer_id=%s", self.peer_id)
                return None

            local_sdp = connection.local_description or answer
            self.local_description_state = ANSWER_SENT
            await self._set_state(CONNECTING)
            self._arm_timeout()
            await self._log(f"Accepted offer from {self.peer_id}")
            return protocol.make_answer(self.room_id, self.local_peer_id, self.peer_id, local_sdp)

    async def accept_answer(self, sdp: str) -> None:
        async with self._lock:
            if (
                self._closed
                or self.is_terminal
                or self.local_description_state != OFFER_SENT
                or self.remote_description_state != REMOTE_NONE
            ):
                raise UnexpectedAnswerError(
                    f"peer {self.peer_id}: unexpected answer "
                    f"(local={self.local_description_state} remote={self.remote_description_state})"
                )

            connection = self._connection
            try:
                await self._step("set remote answer", connection, connection.set_remote_description("answer", sdp))
                self.remote_description_state = REMOTE_SET
                await self._flush_locked(connection)
            except _Discarded:
                logger.debug("rtc remote answer discarded peer_id=%s", self.peer_id)
                return
            await self._log(f"Accepted answer from {self.peer_id}")

    # ----------------------
    # Candidates
    # ----------------------
    async def enqueue_remote_candidate(self, candidate: CandidateDescriptor) -> None:
        async with self._lock:
            if self._closed:
                logger.debug("rtc remote candidate ignored (closed) peer_id=%s", self.peer_id)
                return
            if self.remote_description_state != REMOTE_SET:
                self._remote_candidates.append(candidate)
                logger.debug(
                    "rtc remote candidate buffered peer_id=%s pending=%s", self.peer_id, len(self._remote_candidates)
                )
                return
            connection = self._connection
            await self._apply_remote_candidate(connection, candidate)

    async def flush_pending_remote_candidates(self) -> int:
        async with self._lock:
            if self.remote_description_state != REMOTE_SET:
                raise InvalidStateError(f"peer {self.peer_id}: remote description not set")
            try:
                return await self._flush_locked(self._connection)
            except _Discarded:
                return 0

    async def on_local_candidate_discovered(self, candidate: Optional[CandidateDescriptor]) -> None:
        if self._closed:
            return
        if candidate is None:
            logger.debug("rtc local candidate gathering complete peer_id=%s", self.peer_id)
            await self._log(f"ICE gathering complete for {self.peer_id}")
            return
        self._local_candidates.append(candidate)
        logger.debug("rtc local candidate peer_id=%s", self.peer_id)
        await self._signal(protocol.make_ice_candidate(self.room_id, self.local_peer_id, self.peer_id, candidate))

    # ----------------------
    # Connection events
    # ----------------------
    async def handle_event(self, event: ConnectionEvent) -> None:
        if self._closed:
            return

        if isinstance(event, LocalCandidate):
            await self.on_local_candidate_discovered(event.candidate)
        elif isinstance(event, ConnectionStateChanged):
            await self._on_connection_state(event.state)
        elif isinstance(event, IceConnectionStateChanged):
            logger.info("rtc ice connection peer_id=%s state=%s", self.peer_id, event.state)
            await self._log(f"pc[{self.peer_id}] iceConnectionState={event.state}")
        elif isinstance(event, IceGatheringStateChanged):
            logger.debug("rtc ice gathering peer_id=%s state=%s", self.peer_id, event.state)
            await self._log(f"pc[{self.peer_id}] iceGatheringState={event.state}")
        elif isinstance(event, DataChannelStateChanged):
            logger.info("rtc data channel peer_id=%s label=%s state=%s", self.peer_id, event.label, event.state)
            await self._log(f"pc[{self.peer_id}] channel {event.label} {event.state}")
        else:
            logger.warning("rtc unknown connection event peer_id=%s event=%r", self.peer_id, event)

    async def _on_connection_state(self, state: str) -> None:
        await self._log(f"pc[{self.peer_id}] connectionState={state}")
        if self.is_terminal:
            return
        if state == "connected":
            self._cancel_timeout()
            await self._set_state(CONNECTED)
        elif state == "disconnected":
            await self._set_state(DISCONNECTED)
        elif state == "connecting":
            if self.connection_state == DISCONNECTED:
                await self._set_state(CONNECTING)
        elif state == "failed":
            await self._fail("connection failed")
        elif state == "closed":
            await self.close()

    # ----------------------
    # Lifecycle
    # ----------------------
    async def mark_failed(self, reason: str) -> None:
        await self._fail(reason)

    async def reset(self) -> None:
        """Start over from `new` with a fresh connection, keeping the role."""

        async with self._lock:
            if self._closed:
                raise InvalidStateError(f"peer {self.peer_id}: session closed")
            old = self._connection
            old.set_event_sink(None)
            self._cancel_timeout()
            self._connection = self._new_connection()
            self.local_description_state = LOCAL_NONE
            self.remote_description_state = REMOTE_NONE
            self._remote_candidates.reset()
            self._local_candidates.reset()
            self.connection_state = NEW
            logger.info("rtc session reset peer_id=%s role=%s", self.peer_id, self.role)
            await self._close_connection(old)
            await self._notify_state(NEW)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_timeout()
        self._remote_candidates.clear()
        self._local_candidates.clear()
        connection = self._connection
        connection.set_event_sink(None)
        logger.debug("rtc closing session peer_id=%s", self.peer_id)
        try:
            await self._close_connection(connection)
        finally:
            await self._set_state(CLOSED)

    # ----------------------
    # Internals
    # ----------------------
    def _new_connection(self) -> PeerConnection:
        connection = self._connection_factory(self.peer_id)
        connection.set_event_sink(self.handle_event)
        return connection

    def _is_stale(self, connection: PeerConnection) -> bool:
        return self._closed or connection is not self._connection

    async def _step(self, what: str, connection: PeerConnection, awaitable: Awaitable[Any]) -> Any:
        try:
            result = await awaitable
        except Exception as e:
            if self._is_stale(connection):
                logger.debug("rtc %s failed after close peer_id=%s: %s", what, self.peer_id, e)
                raise _Discarded() from e
            await self._fail(f"{what} failed: {e}")
            raise NegotiationError(f"peer {self.peer_id}: {what} failed") from e
        if self._is_stale(connection):
            raise _Discarded()
        return result

    async def _flush_locked(self, connection: PeerConnection) -> int:
        if self._remote_candidates.drained:
            return 0
        pending = self._remote_candidates.drain()
        if pending:
            logger.debug("rtc flushing remote candidates peer_id=%s count=%s", self.peer_id, len(pending))
        for candidate in pending:
            if self._is_stale(connection):
                raise _Discarded()
            await self._apply_remote_candidate(connection, candidate)
        return len(pending)

    async def _apply_remote_candidate(self, connection: PeerConnection, candidate: CandidateDescriptor) -> None:
        try:
            await connection.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning("rtc remote candidate rejected peer_id=%s: %s", self.peer_id, e)
            await self._log(f"Failed to add ICE candidate from {self.peer_id}: {e}")

    async def _close_connection(self, connection: PeerConnection) -> None:
        try:
            await connection.close()
        except Exception:
            logger.warning("rtc connection close failed peer_id=%s", self.peer_id, exc_info=True)

    async def _fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        self._cancel_timeout()
        logger.warning("rtc session failed peer_id=%s reason=%s", self.peer_id, reason)
        await self._log(f"Session with {self.peer_id} failed: {reason}")
        await self._set_state(FAILED)

    async def _set_state(self, state: str) -> None:
        if state == self.connection_state:
            return
        logger.info("rtc session state peer_id=%s %s -> %s", self.peer_id, self.connection_state, state)
        self.connection_state = state
        await self._notify_state(state)

    async def _notify_state(self, state: str) -> None:
        if self._callbacks.on_state:
            await self._callbacks.on_state(self.peer_id, state)
        for listener in list(self._state_listeners):
            await listener(self, state)

    def _arm_timeout(self) -> None:
        if not self._negotiation_timeout:
            return
        self._cancel_timeout()
        self._timeout_task = asyncio.create_task(
            self._watch_negotiation(self._negotiation_timeout), name=f"negotiation-timeout-{self.peer_id}"
        )

    def _cancel_timeout(self) -> None:
        task = self._timeout_task
        self._timeout_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watch_negotiation(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self.connection_state == CONNECTING:
            await self._fail(f"negotiation timed out after {timeout}s")

    async def _signal(self, msg: SignalMessage) -> None:
        if self._callbacks.on_signal:
            await self._callbacks.on_signal(msg)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
