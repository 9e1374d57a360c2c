"""Application configuration.

Every field can come from a `PEERLINK_*` environment variable; CLI flags in
`main.py` override them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer

from .net.protocol import SDP_PLAIN
from .rtc.room import MEDIA_NONE


DEFAULT_ICE_SERVERS = [
	"stun:stun.l.google.com:19302",
	"stun:stun2.l.google.com:19302",
	"stun:stun.stunprotocol.org",
	"stun:stun.dienst.ist:3478",
]


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
	v = os.environ.get(name)
	if v is None or not v.strip():
		return default
	return v.strip()


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
	v = os.environ.get(name)
	if v is None or not v.strip():
		return default
	try:
		return float(v)
	except ValueError:
		return default


def _env_list(name: str, default: List[str]) -> List[str]:
	v = os.environ.get(name)
	if v is None:
		return list(default)
	return [item.strip() for item in v.split(",") if item.strip()]


@dataclass
class AppConfig:
	server_url: str = "ws://127.0.0.1:8765/ws"
	room: str = "default"
	peer_id: Optional[str] = None
	# Wire encoding of SDP payloads; must match on every peer.
	sdp_encoding: str = SDP_PLAIN
	ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
	media_policy: str = MEDIA_NONE
	data_channel_label: Optional[str] = "channel"
	cleanup_grace_period: Optional[float] = 5.0
	negotiation_timeout: Optional[float] = None

	@classmethod
	def from_env(cls) -> "AppConfig":
		defaults = cls()
		return cls(
			server_url=_env_str("PEERLINK_SERVER_URL", defaults.server_url) or defaults.server_url,
			room=_env_str("PEERLINK_ROOM", defaults.room) or defaults.room,
			peer_id=_env_str("PEERLINK_PEER_ID", None),
			sdp_encoding=_env_str("PEERLINK_SDP_ENCODING", defaults.sdp_encoding) or defaults.sdp_encoding,
			ice_servers=_env_list("PEERLINK_ICE_SERVERS", defaults.ice_servers),
			media_policy=_env_str("PEERLINK_MEDIA_POLICY", defaults.media_policy) or defaults.media_policy,
			data_channel_label=_env_str("PEERLINK_DATA_CHANNEL", defaults.data_channel_label),
			cleanup_grace_period=_env_float("PEERLINK_CLEANUP_GRACE", defaults.cleanup_grace_period),
			negotiation_timeout=_env_float("PEERLINK_NEGOTIATION_TIMEOUT", defaults.negotiation_timeout),
		)

	def rtc_configuration(self) -> RTCConfiguration:
		return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
