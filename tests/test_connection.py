"""Tests for the aiortc-backed connection adapter."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiortc import RTCConfiguration

from peerlink.rtc.connection import (
    AiortcConnection,
    ConnectionStateChanged,
    IceConnectionStateChanged,
    candidate_from_json,
    candidate_to_json,
)


HOST = "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host"


def test_candidate_from_browser_json():
    cand = candidate_from_json({"candidate": HOST, "sdpMid": "0", "sdpMLineIndex": 0})

    assert cand.foundation == "1"
    assert cand.component == 1
    assert cand.ip == "192.168.1.2"
    assert cand.port == 50000
    assert cand.type == "host"
    assert cand.sdpMid == "0"
    assert cand.sdpMLineIndex == 0


def test_candidate_json_round_trip():
    obj = {"candidate": HOST, "sdpMid": "0", "sdpMLineIndex": 0}
    assert candidate_to_json(candidate_from_json(obj)) == obj


def test_candidate_from_json_requires_candidate():
    with pytest.raises(ValueError):
        candidate_from_json({"sdpMid": "0"})


@pytest.mark.asyncio
async def test_offer_with_data_channel():
    conn = AiortcConnection("B", rtc_config=RTCConfiguration(iceServers=[]))
    try:
        conn.create_data_channel("channel")
        sdp = await conn.create_offer()
        assert sdp.startswith("v=0")
        assert "m=application" in sdp
        assert conn.local_description is None
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_end_of_candidates_is_skipped():
    conn = AiortcConnection("B", rtc_config=RTCConfiguration(iceServers=[]))
    try:
        await conn.add_ice_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_close_detaches_sink():
    sink = AsyncMock()
    conn = AiortcConnection("B", rtc_config=RTCConfiguration(iceServers=[]), sink=sink)

    await conn.close()
    await conn.close()
    await conn._emit(ConnectionStateChanged("closed"))

    sink.assert_not_awaited()


@pytest.mark.asyncio
async def test_ice_connection_state_is_reported():
    sink = AsyncMock()
    conn = AiortcConnection("B", rtc_config=RTCConfiguration(iceServers=[]), sink=sink)
    try:
        conn._pc.emit("iceconnectionstatechange")
        await asyncio.sleep(0.01)

        sink.assert_awaited_once_with(IceConnectionStateChanged(conn._pc.iceConnectionState))
    finally:
        await conn.close()
