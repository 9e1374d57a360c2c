from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from .config import AppConfig
from .net.protocol import SdpCodec
from .net.router import SignalingRouter
from .net.signaling_client import TransportCallbacks, WebSocketTransport
from .rtc.connection import AiortcConnection, ConnectionFactory, PeerConnection
from .rtc.registry import SessionRegistry
from .rtc.room import MediaProvider, RoomCoordinator
from .rtc.session import NegotiationSession, SessionCallbacks


logger = logging.getLogger(__name__)


class PeerLinkApp:
    """Wires transport, router, registry and room together for one room."""

    def __init__(
        self,
        cfg: AppConfig,
        *,
        transport: Optional[Any] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        acquire_media: Optional[MediaProvider] = None,
    ):
        self.cfg = cfg
        self._rtc_config = cfg.rtc_configuration()
        self._connection_factory = connection_factory or self._create_connection
        self._tasks: List[asyncio.Task[Any]] = []

        self.room = RoomCoordinator(
            cfg.room,
            cfg.peer_id,
            media_policy=cfg.media_policy,
            acquire_media=acquire_media,
        )
        self.registry = SessionRegistry(self._create_session, cleanup_grace_period=cfg.cleanup_grace_period)
        self.transport = transport or WebSocketTransport(
            cfg.server_url,
            TransportCallbacks(
                on_log=self._on_async_log,
                on_open=self._on_open,
                on_message=self._on_message,
                on_close=self._on_close,
                on_error=self._on_error,
            ),
        )
        self.router = SignalingRouter(
            self.registry,
            self.room,
            self.transport,
            codec=SdpCodec(cfg.sdp_encoding),
        )

    async def run(self, call_peer: Optional[str] = None) -> int:
        if not await self.transport.connect():
            return 1
        if call_peer:
            self._tasks.append(asyncio.create_task(self._call_when_ready(call_peer), name="initial-call"))
        await self.transport.wait_closed()
        await self.router.drain()
        return 0

    async def call(self, peer_id: str) -> NegotiationSession:
        logger.info("app call peer_id=%s", peer_id)
        return await self.router.call(peer_id)

    async def end_call(self, peer_id: str) -> None:
        await self.router.end_call(peer_id)

    async def shutdown(self) -> None:
        logger.info("app shutdown")
        for task in self._tasks:
            task.cancel()
        await self.router.end_all()
        await self.transport.disconnect()

    def _create_session(self, peer_id: str, role: str) -> NegotiationSession:
        if not self.room.peer_id:
            raise RuntimeError("local peer id not assigned yet")
        return NegotiationSession(
            peer_id,
            role,
            local_peer_id=self.room.peer_id,
            room_id=self.room.room_id,
            connection_factory=self._connection_factory,
            callbacks=SessionCallbacks(
                on_log=self._on_async_log,
                on_signal=self.router.send,
                on_state=self._on_session_state,
            ),
            data_channel_label=self.cfg.data_channel_label,
            negotiation_timeout=self.cfg.negotiation_timeout,
        )

    def _create_connection(self, peer_id: str) -> PeerConnection:
        return AiortcConnection(peer_id, rtc_config=self._rtc_config, local_tracks=self.room.local_tracks)

    async def _call_when_ready(self, peer_id: str) -> None:
        await self.room.wait_ready()
        await self.call(peer_id)

    # ----------------------
    # Transport callbacks
    # ----------------------
    async def _on_open(self) -> None:
        await self.router.handle_transport_open()

    async def _on_message(self, raw: str) -> None:
        self.router.deliver(raw)

    async def _on_close(self) -> None:
        await self.router.handle_transport_closed()

    async def _on_error(self, error: str, payload: dict) -> None:
        logger.warning("app signaling error=%s payload=%s", error, payload)

    async def _on_session_state(self, peer_id: str, state: str) -> None:
        logger.info("app peer %s state: %s", peer_id, state)

    async def _on_async_log(self, message: str) -> None:
        logger.debug("%s", message)
