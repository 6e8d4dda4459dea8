"""
Push Transport - executor side of the relay channel.

PushTransportClient keeps one long-lived GET /sse stream open, decodes the
records and hands every command to the executor in its own task, so a slow
command never blocks the read loop. ResultSender posts finished Results
back to POST /result.

Reconnect policy: after the stream ends or fails, wait
reconnect_delay * 2^(attempt-1) and try again, at most max_reconnect_attempts
times. Past that the client stays down until connect()/reconnect() is called
or the keepalive loop notices it is disconnected.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

import httpx
from pydantic import ValidationError as ModelValidationError

from .config import KEEPALIVE_INTERVAL, MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAY, relay_base_url
from .protocol import Command, Result
from .sse import SSEDecoder, SSEEvent

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[None]]

# Heartbeats arrive every 15s; four missed ones means the stream is dead
STREAM_TIMEOUT = httpx.Timeout(10.0, read=60.0)


@dataclass
class ConnectionState:
    connected: bool = False
    reconnect_attempts: int = 0


class PushTransportClient:
    def __init__(self, on_command: CommandHandler, base_url: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 reconnect_delay: float = RECONNECT_DELAY,
                 max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
                 keepalive_interval: float = KEEPALIVE_INTERVAL):
        self.base_url = (base_url or relay_base_url()).rstrip("/")
        self.on_command = on_command
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.keepalive_interval = keepalive_interval
        self.state = ConnectionState()

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=STREAM_TIMEOUT)
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        return self.state.connected

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # === Connection lifecycle ===

    async def connect(self):
        """Open the stream. No-op while a stream is already active."""
        if self._reader and not self._reader.done():
            logger.warning("Already connected")
            return
        logger.info(f"Connecting to {self.base_url}/sse")
        self._reader = asyncio.create_task(self._read_loop())

    def disconnect(self):
        for task in (self._reader, self._reconnect_task):
            if task and not task.done():
                task.cancel()
        self._reader = None
        self._reconnect_task = None
        if self.state.connected:
            logger.info("Disconnecting...")
        self.state.connected = False

    async def reconnect(self):
        """Manual reconnect: resets the attempt counter."""
        self.disconnect()
        self.state.reconnect_attempts = 0
        await self.connect()

    def start_keepalive(self):
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def close(self):
        """Stop everything, including commands still executing."""
        if self._keepalive_task:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        self.disconnect()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # === Stream ===

    async def _read_loop(self):
        try:
            async with self._client.stream(
                "GET", f"{self.base_url}/sse",
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
            ) as response:
                response.raise_for_status()
                self.state.connected = True
                self.state.reconnect_attempts = 0
                logger.info(f"Stream established ({response.headers.get('content-type')})")

                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        self._handle_event(event)
            logger.info("Stream ended")
        except asyncio.CancelledError:
            logger.info("Stream reading aborted")
            self.state.connected = False
            raise
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Stream error: {e}")

        self.state.connected = False
        self._schedule_reconnect()

    def _handle_event(self, event: SSEEvent):
        try:
            payload = event.json()
        except json.JSONDecodeError as e:
            logger.error(f"Malformed {event.type} event: {e}")
            return

        if event.type == "connected":
            logger.info(f"Connection confirmed: {payload}")
        elif event.type == "heartbeat":
            logger.debug(f"Heartbeat: {payload.get('time') if isinstance(payload, dict) else payload}")
        elif event.type == "command":
            try:
                command = Command.model_validate(payload)
            except ModelValidationError as e:
                logger.error(f"Undecodable command: {e}")
                return
            logger.info(f"Command received: {command.action} [{command.id[:8]}]")
            task = asyncio.create_task(self._dispatch(command))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.info(f"Unknown event type: {event.type}")

    async def _dispatch(self, command: Command):
        try:
            await self.on_command(command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Command handler failed for {command.action} [{command.id[:8]}]: {e}")

    # === Reconnect ===

    def _schedule_reconnect(self):
        if self.state.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("Max reconnection attempts reached")
            return
        self.state.reconnect_attempts += 1
        delay = self.reconnect_delay * 2 ** (self.state.reconnect_attempts - 1)
        logger.info(f"Reconnecting in {delay:g}s "
                    f"(attempt {self.state.reconnect_attempts}/{self.max_reconnect_attempts})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    async def _keepalive_loop(self):
        while True:
            await asyncio.sleep(self.keepalive_interval)
            reconnecting = self._reconnect_task is not None and not self._reconnect_task.done()
            if not self.state.connected and not reconnecting:
                logger.info("Keepalive: stream down, reconnecting...")
                await self.connect()


class ResultSender:
    """POSTs Results to the relay. Failures are logged, never raised."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or relay_base_url()).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def send(self, result: Result) -> bool:
        logger.info(f"Sending result [{result.id[:8]}] success={result.success}")
        try:
            response = await self._client.post(f"{self.base_url}/result", json=result.to_wire())
        except httpx.HTTPError as e:
            logger.error(f"Error sending result [{result.id[:8]}]: {e}")
            return False
        if response.is_error:
            logger.error(f"Failed to send result [{result.id[:8]}]: HTTP {response.status_code}")
            return False
        accepted = response.json().get("accepted", False)
        if not accepted:
            logger.warning(f"Relay dropped result [{result.id[:8]}] (timed out or unknown)")
        return accepted

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
