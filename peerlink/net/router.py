"""Inbound message demultiplexing and outbound serialization.

The router is the only component that turns wire text into session
operations. Messages for the same remote peer are handled strictly in
arrival order; messages for unrelated peers run on separate lanes and do
not wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol

from . import protocol
from .protocol import ProtocolError, SdpCodec, SignalMessage, UnknownMessageType
from ..rtc.errors import NegotiationError, UnexpectedAnswerError
from ..rtc.registry import SessionRegistry
from ..rtc.room import RoomCoordinator
from ..rtc.session import CALLEE, CALLER, LOCAL_NONE, REMOTE_SET, NegotiationSession


logger = logging.getLogger(__name__)


ROOM_LANE = ""


class SignalSender(Protocol):
	async def send(self, text: str) -> None: ...


class SignalingRouter:
	def __init__(
		self,
		registry: SessionRegistry,
		room: RoomCoordinator,
		transport: SignalSender,
		*,
		codec: Optional[SdpCodec] = None,
	):
		self.registry = registry
		self.room = room
		self._transport = transport
		self._codec = codec or SdpCodec()
		self._lanes: Dict[str, asyncio.Task[None]] = {}
		self._handlers: Dict[str, Callable[[SignalMessage], Awaitable[None]]] = {
			protocol.JOIN: self._on_join,
			protocol.JOIN_SUCCESS: self._on_join_success,
			protocol.PEER_JOINED: self._on_peer_joined,
			protocol.OFFER: self._on_offer,
			protocol.ANSWER: self._on_answer,
			protocol.ICE_CANDIDATE: self._on_ice_candidate,
		}
		room.set_sender(self.send)

	@property
	def local_peer_id(self) -> Optional[str]:
		return self.room.peer_id

	# ----------------------
	# Outbound
	# ----------------------
	async def send(self, msg: SignalMessage) -> None:
		if msg.type in (protocol.OFFER, protocol.ANSWER):
			logger.info("signaling send type=%s to=%s sdp_len=%s", msg.type, msg.to_peer, len(msg.sdp or ""))
		elif msg.type == protocol.ICE_CANDIDATE:
			logger.debug("signaling send type=ice-candidate to=%s", msg.to_peer)
		else:
			logger.debug("signaling send type=%s", msg.type)

		raw = protocol.encode(msg, self._codec)
		try:
			await self._transport.send(raw)
		except Exception as e:
			logger.warning("signaling send failed type=%s to=%s: %s", msg.type, msg.to_peer, e)
			session = self.registry.get(msg.to_peer) if msg.to_peer else None
			if session is not None:
				await session.mark_failed(f"signaling send failed: {e}")

	# ----------------------
	# Local intent
	# ----------------------
	async def call(self, peer_id: str) -> NegotiationSession:
		if not self.local_peer_id:
			raise RuntimeError("cannot call before a local peer id is assigned")
		existing = self.registry.get(peer_id)
		if existing is not None and existing.is_terminal:
			session = await self.registry.replace(peer_id, CALLER)
		else:
			session = await self.registry.get_or_create(peer_id, CALLER)
		await self._start_offer(session)
		return session

	async def end_call(self, peer_id: str) -> None:
		logger.info("signaling end call peer_id=%s", peer_id)
		await self.registry.remove(peer_id)

	async def end_all(self) -> None:
		await self.registry.close_all()

	# ----------------------
	# Inbound
	# ----------------------
	def deliver(self, raw: str) -> None:
		"""Accept one transport frame and queue it on its peer's lane."""

		msg = self._parse(raw)
		if msg is None:
			return
		if msg.is_peer_scoped:
			key = msg.from_peer or ROOM_LANE
		elif msg.type == protocol.PEER_JOINED:
			key = msg.peer_id or ROOM_LANE
		else:
			key = ROOM_LANE

		prev = self._lanes.get(key)
		task = asyncio.create_task(self._run_lane(prev, msg), name=f"signaling-lane-{key or 'room'}")
		self._lanes[key] = task
		task.add_done_callback(lambda t, k=key: self._release_lane(k, t))

	async def handle_text(self, raw: str) -> None:
		"""Parse and fully process one message."""

		msg = self._parse(raw)
		if msg is not None:
			await self.dispatch(msg)

	async def drain(self) -> None:
		while self._lanes:
			await asyncio.wait(set(self._lanes.values()))

	async def dispatch(self, msg: SignalMessage) -> None:
		if msg.to_peer is not None and msg.to_peer != self.local_peer_id:
			logger.debug("signaling ignoring foreign message type=%s to=%s", msg.type, msg.to_peer)
			return

		handler = self._handlers[msg.type]
		try:
			await handler(msg)
		except NegotiationError as e:
			logger.warning("signaling %s from=%s dropped: %s", msg.type, msg.from_peer or msg.peer_id, e)
		except Exception:
			logger.exception("signaling handler crashed type=%s", msg.type)

	async def handle_transport_open(self) -> None:
		await self.room.handle_open()

	async def handle_transport_closed(self) -> None:
		self.room.handle_close()
		failed = await self.registry.fail_negotiating("signaling transport closed")
		logger.info("signaling transport closed failed_sessions=%s", failed)

	# ----------------------
	# Handlers
	# ----------------------
	async def _on_join(self, msg: SignalMessage) -> None:
		logger.info("signaling dropped inbound join room=%s", msg.room_id)

	async def _on_join_success(self, msg: SignalMessage) -> None:
		released = await self.room.handle_join_success(msg)
		for deferred in released:
			await self.dispatch(deferred)

	async def _on_peer_joined(self, msg: SignalMessage) -> None:
		other_id = msg.peer_id
		if not other_id or other_id == self.local_peer_id:
			return
		if not self.room.admit(msg):
			return
		logger.info("signaling peer-joined peer_id=%s", other_id)
		existing = self.registry.get(other_id)
		if existing is not None and existing.is_terminal:
			session = await self.registry.replace(other_id, CALLER)
		else:
			session = await self.registry.get_or_create(other_id, CALLER)
		await self._start_offer(session)

	async def _on_offer(self, msg: SignalMessage) -> None:
		from_peer = msg.from_peer or ""
		logger.info("signaling offer from=%s sdp_len=%s", from_peer, len(msg.sdp or ""))

		existing = self.registry.get(from_peer)
		if existing is not None and existing.is_terminal:
			session = await self.registry.replace(from_peer, CALLEE)
		elif existing is not None and existing.role == CALLER:
			# Simultaneous offers: the lexicographically smaller peer id stays caller.
			if (self.local_peer_id or "") < from_peer:
				logger.warning("signaling glare with %s; keeping our offer", from_peer)
				return
			logger.warning("signaling glare with %s; yielding to their offer", from_peer)
			session = await self.registry.replace(from_peer, CALLEE)
		else:
			session = await self.registry.get_or_create(from_peer, CALLEE)
			if session.local_description_state != LOCAL_NONE or session.remote_description_state == REMOTE_SET:
				logger.info("signaling renegotiation from=%s", from_peer)
				await session.reset()

		answer = await session.accept_offer(msg.sdp or "")
		if answer is not None:
			await self.send(answer)

	async def _on_answer(self, msg: SignalMessage) -> None:
		from_peer = msg.from_peer or ""
		session = self.registry.get(from_peer)
		if session is None:
			logger.info("signaling answer from unknown peer %s dropped", from_peer)
			return
		logger.info("signaling answer from=%s sdp_len=%s", from_peer, len(msg.sdp or ""))
		try:
			await session.accept_answer(msg.sdp or "")
		except UnexpectedAnswerError as e:
			logger.info("signaling ignoring answer: %s", e)

	async def _on_ice_candidate(self, msg: SignalMessage) -> None:
		from_peer = msg.from_peer or ""
		session = self.registry.get(from_peer)
		if session is None:
			logger.info("signaling candidate from unknown peer %s dropped", from_peer)
			return
		if msg.candidate is None:
			logger.warning("signaling candidate from=%s without descriptor dropped", from_peer)
			return
		await session.enqueue_remote_candidate(msg.candidate)

	# ----------------------
	# Internals
	# ----------------------
	async def _start_offer(self, session: NegotiationSession) -> None:
		offer = await session.create_offer()
		if offer is not None:
			await self.send(offer)

	def _parse(self, raw: str) -> Optional[SignalMessage]:
		try:
			return protocol.decode(raw, self._codec)
		except UnknownMessageType as e:
			logger.warning("signaling dropped unknown message type=%s", e.mtype)
		except ProtocolError as e:
			logger.warning("signaling dropped malformed message: %s", e)
		return None

	async def _run_lane(self, prev: Optional[asyncio.Task[None]], msg: SignalMessage) -> None:
		if prev is not None and not prev.done():
			await asyncio.wait({prev})
		await self.dispatch(msg)

	def _release_lane(self, key: str, task: asyncio.Task[None]) -> None:
		if self._lanes.get(key) is task:
			del self._lanes[key]
