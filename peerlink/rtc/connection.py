"""The underlying connection object for one peer, backed by aiortc.

The negotiation core only talks to the `PeerConnection` protocol below.
Everything the connection reports back (local candidates, state changes,
data channel lifecycle) is delivered as an explicit, ordered stream of
`ConnectionEvent` values to a single sink owned by the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Union

from aiortc import (
    RTCDataChannel,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import CandidateDescriptor


logger = logging.getLogger(__name__)

_CANDIDATE_PREFIX = "candidate:"


@dataclass(frozen=True)
class LocalCandidate:
    # None marks the end of candidate gathering
    candidate: Optional[CandidateDescriptor]


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str


@dataclass(frozen=True)
class IceConnectionStateChanged:
    state: str


@dataclass(frozen=True)
class IceGatheringStateChanged:
    state: str


@dataclass(frozen=True)
class DataChannelStateChanged:
    label: str
    state: str


ConnectionEvent = Union[
    LocalCandidate,
    ConnectionStateChanged,
    IceConnectionStateChanged,
    IceGatheringStateChanged,
    DataChannelStateChanged,
]
EventSink = Callable[[ConnectionEvent], Awaitable[None]]


class PeerConnection(Protocol):
    @property
    def local_description(self) -> Optional[str]: ...

    def set_event_sink(self, sink: Optional[EventSink]) -> None: ...

    async def create_offer(self) -> str: ...

    async def create_answer(self) -> str: ...

    async def set_local_description(self, kind: str, sdp: str) -> None: ...

    async def set_remote_description(self, kind: str, sdp: str) -> None: ...

    async def add_ice_candidate(self, candidate: CandidateDescriptor) -> None: ...

    def create_data_channel(self, label: str) -> Any: ...

    async def close(self) -> None: ...


ConnectionFactory = Callable[[str], PeerConnection]


def candidate_to_json(candidate: RTCIceCandidate) -> CandidateDescriptor:
    return {
        "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: CandidateDescriptor) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith(_CANDIDATE_PREFIX):
        cand_sdp = cand_sdp[len(_CANDIDATE_PREFIX):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


class AiortcConnection:
    def __init__(
        self,
        peer_id: str,
        rtc_config: Optional[RTCConfiguration] = None,
        local_tracks: Iterable[Any] = (),
        sink: Optional[EventSink] = None,
    ):
        self.peer_id = peer_id
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._sink = sink
        self._channels: List[RTCDataChannel] = []
        self._closed = False

        for track in local_tracks:
            self._pc.addTrack(track)

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", None)
            await self._emit(LocalCandidate(candidate_to_json(candidate) if candidate is not None else None))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            await self._emit(ConnectionStateChanged(self._pc.connectionState))

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            await self._emit(IceConnectionStateChanged(self._pc.iceConnectionState))

        @self._pc.on("icegatheringstatechange")
        async def on_icegatheringstatechange() -> None:
            await self._emit(IceGatheringStateChanged(self._pc.iceGatheringState))

        @self._pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            logger.debug("rtc remote data channel peer_id=%s label=%s", self.peer_id, channel.label)
            self._watch_channel(channel)

        @self._pc.on("track")
        def on_track(track) -> None:
            logger.info("rtc remote track peer_id=%s kind=%s", self.peer_id, track.kind)

    @property
    def local_description(self) -> Optional[str]:
        desc = self._pc.localDescription
        return desc.sdp if desc is not None else None

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._sink = sink

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        return offer.sdp

    async def create_answer(self) -> str:
        answer = await self._pc.createAnswer()
        return answer.sdp

    async def set_local_description(self, kind: str, sdp: str) -> None:
        # aiortc gathers candidates here and folds them into the description
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def add_ice_candidate(self, candidate: CandidateDescriptor) -> None:
        if not candidate.get("candidate"):
            logger.debug("rtc end-of-candidates peer_id=%s", self.peer_id)
            return
        await self._pc.addIceCandidate(candidate_from_json(candidate))

    def create_data_channel(self, label: str) -> RTCDataChannel:
        channel = self._pc.createDataChannel(label)
        self._watch_channel(channel)
        return channel

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sink = None
        await self._pc.close()

    def _watch_channel(self, channel: RTCDataChannel) -> None:
        self._channels.append(channel)

        @channel.on("open")
        async def on_open() -> None:
            await self._emit(DataChannelStateChanged(channel.label, "open"))

        @channel.on("close")
        async def on_close() -> None:
            await self._emit(DataChannelStateChanged(channel.label, "closed"))

    async def _emit(self, event: ConnectionEvent) -> None:
        if self._sink is not None:
            await self._sink(event)
