"""Shared fakes for the negotiation tests.

`FakeConnection` stands in for the aiortc-backed connection object. It
enforces the one rule the negotiation core must never break: a remote
candidate may only be added after the remote description is set.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from peerlink.app import PeerLinkApp
from peerlink.config import AppConfig
from peerlink.net import protocol
from peerlink.rtc.session import NegotiationSession, SessionCallbacks


class FakeConnection:
    def __init__(self, peer_id: str, *, fail: Optional[set] = None, offer_gate: Optional[asyncio.Event] = None):
        self.peer_id = peer_id
        self.fail = fail or set()
        self.offer_gate = offer_gate
        self.calls: List[str] = []
        self.added: List[Dict[str, Any]] = []
        self.channels: List[str] = []
        self.remote_description = None
        self.sink = None
        self.closed = False
        self._local: Optional[str] = None

    @property
    def local_description(self) -> Optional[str]:
        return self._local

    def set_event_sink(self, sink) -> None:
        self.sink = sink

    async def create_offer(self) -> str:
        self.calls.append("create_offer")
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        self._maybe_fail("create_offer")
        return f"v=0\r\no=- offer-to-{self.peer_id}\r\n"

    async def create_answer(self) -> str:
        self.calls.append("create_answer")
        self._maybe_fail("create_answer")
        return f"v=0\r\no=- answer-to-{self.peer_id}\r\n"

    async def set_local_description(self, kind: str, sdp: str) -> None:
        self.calls.append(f"set_local:{kind}")
        self._maybe_fail("set_local_description")
        self._local = sdp

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        self.calls.append(f"set_remote:{kind}")
        self._maybe_fail("set_remote_description")
        self.remote_description = (kind, sdp)

    async def add_ice_candidate(self, candidate) -> None:
        if self.remote_description is None:
            raise AssertionError("candidate applied before remote description")
        self._maybe_fail("add_ice_candidate")
        self.added.append(candidate)

    def create_data_channel(self, label: str) -> str:
        self.channels.append(label)
        return label

    async def close(self) -> None:
        self.closed = True

    async def emit(self, event) -> None:
        if self.sink is not None:
            await self.sink(event)

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise RuntimeError(f"{name} rejected")


class FakeConnectionFactory:
    def __init__(self):
        self.created: List[FakeConnection] = []
        self.fail: set = set()
        self.offer_gate: Optional[asyncio.Event] = None

    def __call__(self, peer_id: str) -> FakeConnection:
        conn = FakeConnection(peer_id, fail=set(self.fail), offer_gate=self.offer_gate)
        self.created.append(conn)
        return conn

    def for_peer(self, peer_id: str) -> List[FakeConnection]:
        return [c for c in self.created if c.peer_id == peer_id]


class FakeTransport:
    def __init__(self):
        self.sent: List[str] = []
        self.fail = False

    async def send(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("Signaling not connected")
        self.sent.append(text)

    @property
    def sent_objects(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self.sent]

    def sent_of_type(self, mtype: str) -> List[Dict[str, Any]]:
        return [obj for obj in self.sent_objects if obj.get("type") == mtype]


def candidate(n: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{n} 1 udp {2130706431 - n} 192.168.1.{n} {50000 + n} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


@pytest.fixture
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture
def make_session(factory):
    def _make(peer_id: str = "B", role: str = "caller", **kwargs) -> NegotiationSession:
        kwargs.setdefault("callbacks", SessionCallbacks())
        return NegotiationSession(
            peer_id,
            role,
            local_peer_id=kwargs.pop("local_peer_id", "A"),
            room_id=kwargs.pop("room_id", "room-1"),
            connection_factory=kwargs.pop("connection_factory", factory),
            **kwargs,
        )

    return _make


def make_app(peer_id: Optional[str], factory: FakeConnectionFactory, **cfg_kwargs) -> PeerLinkApp:
    cfg_kwargs.setdefault("room", "room-1")
    cfg_kwargs.setdefault("ice_servers", [])
    cfg = AppConfig(peer_id=peer_id, **cfg_kwargs)
    return PeerLinkApp(cfg, transport=FakeTransport(), connection_factory=factory)


async def join(app: PeerLinkApp, peer_id: Optional[str] = None) -> None:
    peer_id = peer_id or app.room.peer_id
    await app.router.handle_text(protocol.encode(protocol.make_join_success(peer_id, "room-1")))
