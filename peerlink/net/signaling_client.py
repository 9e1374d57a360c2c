"""WebSocket signaling transport.

This is intentionally unaware of aiortc and of the message kinds. It
delivers raw text frames to `on_message` strictly in arrival order, one at
a time, and reports open/close/error. Reconnection is left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


class TransportClosedError(RuntimeError):
	pass


@dataclass
class TransportCallbacks:
	on_log: Optional[AsyncCallback] = None  # (message: str)
	on_open: Optional[AsyncCallback] = None  # ()
	on_message: Optional[AsyncCallback] = None  # (raw: str)
	on_close: Optional[AsyncCallback] = None  # ()
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class WebSocketTransport:
	def __init__(self, url: str, callbacks: Optional[TransportCallbacks] = None):
		self.url = url
		self.callbacks = callbacks or TransportCallbacks()

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._closed_evt = asyncio.Event()
		self._closed_evt.set()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and not self._closed_evt.is_set()

	async def connect(self) -> bool:
		if self._recv_task and not self._recv_task.done():
			return True

		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except (OSError, WebSocketException, asyncio.TimeoutError):
			logger.exception("signaling connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			return False
		self._closed_evt.clear()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")
		if self.callbacks.on_open:
			await self.callbacks.on_open()
		return True

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling disconnect")
		ws = self._ws
		if ws is not None:
			try:
				await ws.close()
			except (OSError, WebSocketException):
				logger.debug("signaling close failed", exc_info=True)
		if self._recv_task:
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None
		self._ws = None

	async def wait_closed(self) -> None:
		await self._closed_evt.wait()

	async def send(self, text: str) -> None:
		ws = self._ws
		if ws is None or self._closed_evt.is_set():
			raise TransportClosedError("Signaling not connected")
		async with self._send_lock:
			try:
				await ws.send(text)
			except ConnectionClosed as e:
				raise TransportClosedError(f"Signaling connection closed: {e}") from e

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				if isinstance(raw, bytes):
					try:
						raw = raw.decode("utf-8")
					except UnicodeDecodeError:
						await self._emit_error("invalid-frame", {"size": len(raw)})
						continue
				if self.callbacks.on_message:
					await self.callbacks.on_message(raw)

		except asyncio.CancelledError:
			raise
		except ConnectionClosed as e:
			logger.info("signaling connection closed code=%s", getattr(e, "code", None))
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._closed_evt.set()
			logger.debug("signaling recv loop stopped")
			if self._ws is ws:
				self._ws = None
			try:
				await ws.close()
			except (OSError, WebSocketException):
				logger.debug("signaling close after recv loop failed", exc_info=True)
			if self.callbacks.on_close:
				await self.callbacks.on_close()

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
