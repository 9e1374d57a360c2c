"""Tests for configuration loading and the console entry point."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from peerlink.config import DEFAULT_ICE_SERVERS, AppConfig
from peerlink.main import build_parser, main


class TestAppConfig:
    def test_defaults(self, monkeypatch):
        for name in ("PEERLINK_SERVER_URL", "PEERLINK_ROOM", "PEERLINK_ICE_SERVERS", "PEERLINK_PEER_ID"):
            monkeypatch.delenv(name, raising=False)

        cfg = AppConfig.from_env()

        assert cfg.room == "default"
        assert cfg.peer_id is None
        assert cfg.sdp_encoding == "plain"
        assert cfg.ice_servers == DEFAULT_ICE_SERVERS
        assert cfg.negotiation_timeout is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PEERLINK_ROOM", "standup")
        monkeypatch.setenv("PEERLINK_PEER_ID", "alice")
        monkeypatch.setenv("PEERLINK_SDP_ENCODING", "base64")
        monkeypatch.setenv("PEERLINK_ICE_SERVERS", "stun:a.example:3478, stun:b.example")
        monkeypatch.setenv("PEERLINK_NEGOTIATION_TIMEOUT", "12.5")
        monkeypatch.setenv("PEERLINK_CLEANUP_GRACE", "not-a-number")

        cfg = AppConfig.from_env()

        assert cfg.room == "standup"
        assert cfg.peer_id == "alice"
        assert cfg.sdp_encoding == "base64"
        assert cfg.ice_servers == ["stun:a.example:3478", "stun:b.example"]
        assert cfg.negotiation_timeout == 12.5
        assert cfg.cleanup_grace_period == 5.0

    def test_rtc_configuration(self):
        rtc = AppConfig(ice_servers=["stun:a.example:3478"]).rtc_configuration()
        assert [s.urls for s in rtc.iceServers] == ["stun:a.example:3478"]


class TestCLI:
    def test_parser_defaults_come_from_config(self):
        args = build_parser(AppConfig(room="lobby")).parse_args([])
        assert args.room == "lobby"
        assert args.call is None

    def test_parser_rejects_unknown_encoding(self):
        with pytest.raises(SystemExit):
            build_parser(AppConfig()).parse_args(["--sdp-encoding", "hex"])

    def test_main_runs_app(self, monkeypatch):
        monkeypatch.delenv("PEERLINK_MEDIA_POLICY", raising=False)
        app = MagicMock()
        app.run = AsyncMock(return_value=0)
        app.shutdown = AsyncMock()

        with patch("peerlink.main.PeerLinkApp", return_value=app) as app_cls:
            code = main(["--room", "r1", "--peer-id", "A", "--call", "B", "--media", "clip.mp4"])

        assert code == 0
        cfg = app_cls.call_args.args[0]
        assert (cfg.room, cfg.peer_id, cfg.media_policy) == ("r1", "A", "best-effort")
        assert app_cls.call_args.kwargs["acquire_media"] is not None
        app.run.assert_awaited_once_with(call_peer="B")
        app.shutdown.assert_awaited_once()
