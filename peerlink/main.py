from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, List, Optional

from .app import PeerLinkApp
from .config import AppConfig
from .logging_config import setup_logging
from .net.protocol import SDP_BASE64, SDP_PLAIN
from .rtc.room import MEDIA_BEST_EFFORT, MEDIA_NONE, MEDIA_POLICIES


logger = logging.getLogger(__name__)


def _media_provider(path: str):
	async def acquire() -> List[Any]:
		from aiortc.contrib.media import MediaPlayer

		player = MediaPlayer(path)
		return [track for track in (player.audio, player.video) if track is not None]

	return acquire


def build_parser(defaults: AppConfig) -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="peerlink signaling client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use PEERLINK_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=defaults.server_url, help="WebSocket signaling URL")
	parser.add_argument("--room", default=defaults.room, help="Room to join")
	parser.add_argument(
		"--peer-id",
		default=defaults.peer_id,
		help="Local peer id (default: assigned by the server in join-success)",
	)
	parser.add_argument(
		"--sdp-encoding",
		choices=(SDP_PLAIN, SDP_BASE64),
		default=defaults.sdp_encoding,
		help="Wire encoding of SDP payloads; every peer must use the same one",
	)
	parser.add_argument("--media-policy", choices=MEDIA_POLICIES, default=defaults.media_policy)
	parser.add_argument("--media", default=None, help="Media file or device to send (implies best-effort policy)")
	parser.add_argument("--call", default=None, metavar="PEER", help="Call this peer once the room is joined")
	return parser


def main(argv: Optional[List[str]] = None) -> int:
	defaults = AppConfig.from_env()
	args = build_parser(defaults).parse_args(argv)

	setup_logging(args.log_level)

	cfg = defaults
	cfg.server_url = args.server_url
	cfg.room = args.room
	cfg.peer_id = args.peer_id
	cfg.sdp_encoding = args.sdp_encoding
	cfg.media_policy = args.media_policy
	acquire_media = None
	if args.media:
		acquire_media = _media_provider(args.media)
		if cfg.media_policy == MEDIA_NONE:
			cfg.media_policy = MEDIA_BEST_EFFORT

	async def _run() -> int:
		app = PeerLinkApp(cfg, acquire_media=acquire_media)
		try:
			return await app.run(call_peer=args.call)
		finally:
			await app.shutdown()

	try:
		return asyncio.run(_run())
	except KeyboardInterrupt:
		logger.info("interrupted")
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
