"""
Live feed client for the dashboard WebSocket.

Subscribes to channels on /ws, keeps the connection alive with pings and
reconnects with exponential backoff. Once the reconnect budget is spent it
falls back to polling the REST endpoints.
"""
import json
import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    """Exponential backoff between reconnect attempts."""

    def __init__(
        self,
        base_delay: float = 3.0,
        factor: float = 1.5,
        max_delay: float = 30.0,
        warn_after: int = 15,
        max_attempts: int = 30,
    ):
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.warn_after = warn_after
        self.max_attempts = max_attempts

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** attempt, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def should_warn(self, attempt: int) -> bool:
        return attempt >= self.warn_after


class LiveFeedClient:
    """
    Receives live channel updates, over WebSocket when possible.

    Args:
        ws_url: WebSocket endpoint, e.g. ws://host/ws
        channels: Channels to subscribe to
        on_message: Called (sync or async) with each decoded message
        poll_urls: REST endpoint per channel used by the polling fallback
        policy: Reconnect backoff policy
        poll_interval: Seconds between polls in fallback mode
        ping_interval: Seconds between keepalive pings
        headers: Extra HTTP headers for polling requests (e.g. Authorization)
        connect: WebSocket connect factory; defaults to websockets.connect
        transport: httpx transport for polling requests
    """

    def __init__(
        self,
        ws_url: str,
        channels: List[str],
        on_message: Callable[[Dict[str, Any]], Optional[Awaitable[None]]],
        poll_urls: Optional[Dict[str, str]] = None,
        policy: Optional[ReconnectPolicy] = None,
        poll_interval: float = 10.0,
        ping_interval: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        connect: Optional[Callable] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ws_url = ws_url
        self.channels = list(channels)
        self.on_message = on_message
        self.poll_urls = poll_urls or {}
        self.policy = policy or ReconnectPolicy()
        self.poll_interval = poll_interval
        self.ping_interval = ping_interval
        self.headers = headers or {}
        self.connect = connect or websockets.connect
        self.transport = transport
        self.sleep = sleep

        self.attempts = 0
        self.connection_type: Optional[str] = None
        self.closed = False
        self._ws = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        result = self.on_message(message)
        if inspect.isawaitable(result):
            await result

    async def _ping_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await ws.send(json.dumps({
                    "type": "ping",
                    "data": {"timestamp": datetime.now(timezone.utc).isoformat()},
                }))
            except (OSError, WebSocketException) as e:
                # The receive loop notices the dead connection and reconnects
                logger.warning("Ping failed: %s", e)
                return

    async def _session(self) -> None:
        """One connection: subscribe, then pump messages until it closes."""
        async with self.connect(self.ws_url) as ws:
            self._ws = ws
            self.attempts = 0
            self.connection_type = "websocket"
            logger.info("Connected to %s", self.ws_url)
            for channel in self.channels:
                await ws.send(json.dumps({"type": "subscribe", "channel": channel}))

            pinger = asyncio.create_task(self._ping_loop(ws))
            try:
                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except ValueError:
                        logger.warning("Ignoring non-JSON message: %r", raw[:100])
                        continue
                    await self._dispatch(message)
            finally:
                pinger.cancel()
                self._ws = None

    async def run(self) -> None:
        """Connect and keep reconnecting until closed or the retry budget is spent."""
        while not self.closed:
            try:
                await self._session()
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("WebSocket connection error: %s", e)

            if self.closed:
                break

            self.attempts += 1
            if not self.policy.should_retry(self.attempts):
                logger.error(
                    "Exceeded maximum reconnection attempts (%s), switching to polling",
                    self.policy.max_attempts,
                )
                await self.poll()
                return
            if self.policy.should_warn(self.attempts):
                logger.warning(
                    "High number of reconnection attempts (%s/%s), will keep trying",
                    self.attempts, self.policy.max_attempts,
                )
            delay = self.policy.delay(self.attempts)
            logger.info("Scheduling reconnect in %.1fs (attempt %s)", delay, self.attempts + 1)
            await self.sleep(delay)

    async def poll_once(self, client: httpx.AsyncClient) -> int:
        """Fetch every channel's endpoint once; returns how many succeeded."""
        delivered = 0
        for channel in self.channels:
            url = self.poll_urls.get(channel)
            if not url:
                continue
            try:
                response = await client.get(url, headers=self.headers)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Polling %s failed: %s", channel, e)
                continue
            await self._dispatch({"type": channel, "data": data})
            delivered += 1
        return delivered

    async def poll(self) -> None:
        self.connection_type = "polling"
        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            while not self.closed:
                await self.poll_once(client)
                await self.sleep(self.poll_interval)

    async def close(self) -> None:
        """Stop reconnecting or polling and close any open socket."""
        self.closed = True
        if self._ws is not None:
            await self._ws.close()
