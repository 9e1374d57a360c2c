"""Signaling protocol helpers.

Every message is one JSON object on the signaling transport. Peer-scoped
kinds (offer, answer, ice-candidate) carry `from`/`to`; room-scoped kinds
(join, join-success, peer-joined) carry only `peerId`.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, TypedDict


# Message type constants
JOIN = "join"
JOIN_SUCCESS = "join-success"
PEER_JOINED = "peer-joined"

OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

ROOM_KINDS = frozenset({JOIN, JOIN_SUCCESS, PEER_JOINED})
PEER_KINDS = frozenset({OFFER, ANSWER, ICE_CANDIDATE})
KINDS = ROOM_KINDS | PEER_KINDS

SDP_PLAIN = "plain"
SDP_BASE64 = "base64"


class CandidateDescriptor(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]
	usernameFragment: Optional[str]


class ProtocolError(Exception):
	"""Raised for messages that cannot be parsed into a SignalMessage."""


class UnknownMessageType(ProtocolError):
	def __init__(self, mtype: str):
		super().__init__(f"unknown message type: {mtype!r}")
		self.mtype = mtype


@dataclass(frozen=True)
class SignalMessage:
	type: str
	room_id: Optional[str] = None
	peer_id: Optional[str] = None
	from_peer: Optional[str] = None
	to_peer: Optional[str] = None
	sdp: Optional[str] = None
	candidate: Optional[CandidateDescriptor] = None

	@property
	def is_peer_scoped(self) -> bool:
		return self.type in PEER_KINDS


class SdpCodec:
	"""Fixed, deployment-wide encoding of SDP payloads on the wire."""

	def __init__(self, encoding: str = SDP_PLAIN):
		if encoding not in (SDP_PLAIN, SDP_BASE64):
			raise ValueError(f"unsupported sdp encoding: {encoding!r}")
		self.encoding = encoding

	def encode(self, sdp: str) -> str:
		if self.encoding == SDP_BASE64:
			return base64.b64encode(sdp.encode("utf-8")).decode("ascii")
		return sdp

	def decode(self, raw: str) -> str:
		if self.encoding == SDP_BASE64:
			try:
				return base64.b64decode(raw.encode("ascii"), validate=True).decode("utf-8")
			except (binascii.Error, UnicodeError) as e:
				raise ProtocolError(f"invalid base64 sdp: {e}") from e
		return raw


def make_join(room_id: str, peer_id: Optional[str] = None) -> SignalMessage:
	return SignalMessage(type=JOIN, room_id=room_id, peer_id=peer_id)


def make_join_success(peer_id: str, room_id: Optional[str] = None) -> SignalMessage:
	return SignalMessage(type=JOIN_SUCCESS, peer_id=peer_id, room_id=room_id)


def make_peer_joined(peer_id: str, room_id: Optional[str] = None) -> SignalMessage:
	return SignalMessage(type=PEER_JOINED, peer_id=peer_id, room_id=room_id)


def make_offer(room_id: Optional[str], from_peer: str, to_peer: str, sdp: str) -> SignalMessage:
	return SignalMessage(type=OFFER, room_id=room_id, from_peer=from_peer, to_peer=to_peer, sdp=sdp)


def make_answer(room_id: Optional[str], from_peer: str, to_peer: str, sdp: str) -> SignalMessage:
	return SignalMessage(type=ANSWER, room_id=room_id, from_peer=from_peer, to_peer=to_peer, sdp=sdp)


def make_ice_candidate(
	room_id: Optional[str], from_peer: str, to_peer: str, candidate: CandidateDescriptor
) -> SignalMessage:
	return SignalMessage(
		type=ICE_CANDIDATE, room_id=room_id, from_peer=from_peer, to_peer=to_peer, candidate=candidate
	)


def to_dict(msg: SignalMessage, codec: Optional[SdpCodec] = None) -> Dict[str, Any]:
	codec = codec or SdpCodec()
	out: Dict[str, Any] = {"type": msg.type}
	if msg.room_id is not None:
		out["roomId"] = msg.room_id
	if msg.peer_id is not None:
		out["peerId"] = msg.peer_id
	if msg.from_peer is not None:
		out["from"] = msg.from_peer
	if msg.to_peer is not None:
		out["to"] = msg.to_peer
	if msg.sdp is not None:
		out["sdp"] = codec.encode(msg.sdp)
	if msg.candidate is not None:
		out["candidate"] = dict(msg.candidate)
	return out


def encode(msg: SignalMessage, codec: Optional[SdpCodec] = None) -> str:
	return json.dumps(to_dict(msg, codec), separators=(",", ":"), ensure_ascii=False)


def _opt_str(obj: Dict[str, Any], key: str) -> Optional[str]:
	value = obj.get(key)
	if value is None:
		return None
	if not isinstance(value, str):
		raise ProtocolError(f"field {key!r} must be a string")
	return value


def _req_str(obj: Dict[str, Any], key: str) -> str:
	value = _opt_str(obj, key)
	if not value:
		raise ProtocolError(f"missing field {key!r}")
	return value


def parse_candidate(raw: Any) -> CandidateDescriptor:
	"""Structural parse of a candidate descriptor.

	Accepts the descriptor as an object or as a JSON string holding one
	(older clients stringify `RTCIceCandidate.toJSON()`).
	"""

	if isinstance(raw, str):
		try:
			raw = json.loads(raw)
		except (ValueError, RecursionError) as e:
			raise ProtocolError(f"candidate is not valid json: {e}") from e
	if not isinstance(raw, dict):
		raise ProtocolError("candidate must be an object")
	cand = raw.get("candidate")
	if not isinstance(cand, str):
		raise ProtocolError("candidate.candidate must be a string")
	mid = raw.get("sdpMid")
	if mid is not None and not isinstance(mid, str):
		raise ProtocolError("candidate.sdpMid must be a string or null")
	index = raw.get("sdpMLineIndex")
	if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
		raise ProtocolError("candidate.sdpMLineIndex must be an integer or null")

	# opaque beyond the checks above; keys are passed through untouched
	out: CandidateDescriptor = dict(raw)  # type: ignore[assignment]
	return out


def from_dict(obj: Any, codec: Optional[SdpCodec] = None) -> SignalMessage:
	codec = codec or SdpCodec()
	if not isinstance(obj, dict):
		raise ProtocolError("message must be a json object")

	mtype = obj.get("type")
	if not isinstance(mtype, str):
		raise ProtocolError("missing type")
	if mtype not in KINDS:
		raise UnknownMessageType(mtype)

	room_id = _opt_str(obj, "roomId")

	if mtype == JOIN:
		if not room_id:
			raise ProtocolError("missing field 'roomId'")
		return SignalMessage(type=mtype, room_id=room_id, peer_id=_opt_str(obj, "peerId"))

	if mtype in (JOIN_SUCCESS, PEER_JOINED):
		return SignalMessage(type=mtype, room_id=room_id, peer_id=_req_str(obj, "peerId"))

	from_peer = _req_str(obj, "from")
	to_peer = _opt_str(obj, "to")

	if mtype in (OFFER, ANSWER):
		raw_sdp = obj.get("sdp")
		if not isinstance(raw_sdp, str) or not raw_sdp:
			raise ProtocolError("missing field 'sdp'")
		return SignalMessage(
			type=mtype, room_id=room_id, from_peer=from_peer, to_peer=to_peer, sdp=codec.decode(raw_sdp)
		)

	if "candidate" not in obj:
		raise ProtocolError("missing field 'candidate'")
	return SignalMessage(
		type=mtype,
		room_id=room_id,
		from_peer=from_peer,
		to_peer=to_peer,
		candidate=parse_candidate(obj["candidate"]),
	)


def decode(raw: str, codec: Optional[SdpCodec] = None) -> SignalMessage:
	try:
		obj = json.loads(raw)
	except (ValueError, TypeError, RecursionError) as e:
		# JSONDecodeError is a ValueError; deep nesting exhausts the recursion limit
		raise ProtocolError(f"invalid json: {e}") from e
	return from_dict(obj, codec)
