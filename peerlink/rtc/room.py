"""Room join handshake and local media gating."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from ..net import protocol
from ..net.protocol import SignalMessage


logger = logging.getLogger(__name__)


MEDIA_NONE = "none"
MEDIA_BEST_EFFORT = "best-effort"
MEDIA_REQUIRED = "required"
MEDIA_POLICIES = (MEDIA_NONE, MEDIA_BEST_EFFORT, MEDIA_REQUIRED)

SendCallback = Callable[[SignalMessage], Awaitable[None]]
MediaProvider = Callable[[], Awaitable[List[Any]]]


class RoomCoordinator:
    """Joins a room and decides when `peer-joined` may start negotiation.

    Nothing is negotiated before `join-success`. Depending on the media
    policy, local media is acquired first; with `required`, a failed
    acquisition keeps the room closed to new sessions.
    """

    def __init__(
        self,
        room_id: str,
        peer_id: Optional[str] = None,
        *,
        media_policy: str = MEDIA_NONE,
        acquire_media: Optional[MediaProvider] = None,
    ):
        if media_policy not in MEDIA_POLICIES:
            raise ValueError(f"unknown media policy: {media_policy!r}")
        self.room_id = room_id
        self.peer_id = peer_id
        self.media_policy = media_policy
        self.local_tracks: List[Any] = []

        self._acquire_media = acquire_media
        self._send: Optional[SendCallback] = None
        self._joined = False
        self._ready = False
        self._ready_evt = asyncio.Event()
        self._deferred: List[SignalMessage] = []

    @property
    def joined(self) -> bool:
        return self._joined

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def deferred(self) -> List[SignalMessage]:
        return list(self._deferred)

    def set_sender(self, send: SendCallback) -> None:
        self._send = send

    async def handle_open(self) -> None:
        logger.info("room join room=%s peer_id=%s", self.room_id, self.peer_id)
        if self._send is None:
            raise RuntimeError("RoomCoordinator has no sender")
        await self._send(protocol.make_join(self.room_id, self.peer_id))

    async def handle_join_success(self, msg: SignalMessage) -> List[SignalMessage]:
        """Record our peer id, apply the media policy and release deferred peers."""

        if self.peer_id and msg.peer_id and msg.peer_id != self.peer_id:
            logger.warning("room join-success reassigned peer_id %s -> %s", self.peer_id, msg.peer_id)
        if msg.peer_id:
            self.peer_id = msg.peer_id
        self._joined = True
        logger.info("room joined room=%s peer_id=%s", self.room_id, self.peer_id)

        if not await self._prepare_media():
            return []

        self._ready = True
        self._ready_evt.set()
        released, self._deferred = self._deferred, []
        if released:
            logger.debug("room releasing deferred peers count=%s", len(released))
        return released

    def admit(self, msg: SignalMessage) -> bool:
        """True if a `peer-joined` may be acted on now; otherwise it is held."""

        if self._ready:
            return True
        logger.debug("room deferring peer-joined peer_id=%s", msg.peer_id)
        self._deferred.append(msg)
        return False

    async def wait_ready(self) -> None:
        await self._ready_evt.wait()

    def handle_close(self) -> None:
        self._joined = False
        self._ready = False
        self._ready_evt.clear()
        self._deferred.clear()

    async def _prepare_media(self) -> bool:
        if self.media_policy == MEDIA_NONE or self.local_tracks:
            return True
        if self._acquire_media is None:
            if self.media_policy == MEDIA_REQUIRED:
                logger.error("room media required but no media provider configured")
                return False
            return True
        try:
            self.local_tracks = list(await self._acquire_media())
        except Exception:
            logger.exception("room local media acquisition failed policy=%s", self.media_policy)
            return self.media_policy != MEDIA_REQUIRED
        if not self.local_tracks and self.media_policy == MEDIA_REQUIRED:
            logger.error("room media required but provider returned no tracks")
            return False
        logger.info("room local media ready tracks=%s", len(self.local_tracks))
        return True
