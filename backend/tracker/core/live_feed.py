"""
Live block feed for the block tracker.

Subscribes to mempool.space block notifications over a websocket and hands
each announced height to a callback (the scheduler's enqueue_live).

RULE: The feed never touches the store or credentials.
RULE: Disconnection means "no live entries until reconnected", never shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import httpx
import websockets

from tracker.core.backoff import ReconnectPolicy
from tracker.core.errors import FeedError, FetchError

logger = logging.getLogger(__name__)

MEMPOOL_WS_URL = "wss://mempool.space/api/v1/ws"
TIP_HEIGHT_URL = "https://mempool.space/api/blocks/tip/height"
SUBSCRIBE_MESSAGE = {"action": "want", "data": ["blocks"]}


def parse_block_height(raw: str | bytes) -> Optional[int]:
    """
    Extract the block height from a feed message.

    Returns None for messages that carry no block; raises FeedError for
    messages that cannot be decoded.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FeedError(f"Undecodable feed message: {e}") from e

    if not isinstance(message, dict):
        return None
    block = message.get("block")
    if not isinstance(block, dict):
        return None
    height = block.get("height")
    if isinstance(height, bool) or not isinstance(height, int) or height < 0:
        raise FeedError(f"Invalid block height in feed message: {height!r}")
    return height


async def fetch_tip_height(client: httpx.AsyncClient, url: str = TIP_HEIGHT_URL) -> int:
    """Current chain tip height as reported by mempool.space."""
    try:
        response = await client.get(url, timeout=10.0)
        response.raise_for_status()
        return int(response.text.strip())
    except (httpx.HTTPError, ValueError) as e:
        raise FetchError(f"Could not get current block height: {e}") from e


class MempoolBlockFeed:
    """
    Reconnecting websocket subscription to new block heights.
    """

    def __init__(
        self,
        on_block: Callable[[int], object],
        *,
        url: str = MEMPOOL_WS_URL,
        reconnect: ReconnectPolicy = ReconnectPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._on_block = on_block
        self._url = url
        self._reconnect = reconnect
        self._sleep = sleep
        self._ws = None
        self._stopping = False
        self.reconnect_attempts = 0
        self.connected = False

    def handle_message(self, raw: str | bytes) -> Optional[int]:
        """Route one message; returns the height handed to the callback, if any."""
        try:
            height = parse_block_height(raw)
        except FeedError as e:
            logger.error(f"WebSocket message error: {e}")
            return None
        if height is not None:
            self._on_block(height)
        return height

    async def run(self) -> None:
        """Connect, consume, and reconnect until closed or out of attempts."""
        while not self._stopping:
            try:
                logger.info("Connecting to mempool.space websocket...")
                async with websockets.connect(self._url) as ws:
                    self._ws = ws
                    self.connected = True
                    self.reconnect_attempts = 0
                    logger.info("Connected to mempool.space websocket")
                    await ws.send(json.dumps(SUBSCRIBE_MESSAGE))

                    async for raw in ws:
                        self.handle_message(raw)

                logger.warning("WebSocket connection closed")
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.error(f"WebSocket error: {e}")
            finally:
                self._ws = None
                self.connected = False

            if self._stopping:
                break

            self.reconnect_attempts += 1
            if self._reconnect.gives_up(self.reconnect_attempts):
                logger.error("Max reconnection attempts reached; live feed stopped")
                return

            delay = self._reconnect.delay(self.reconnect_attempts)
            logger.info(
                f"Reconnecting WebSocket in {delay:.0f}s "
                f"(attempt {self.reconnect_attempts}/{self._reconnect.max_attempts or 'unlimited'})"
            )
            await self._sleep(delay)

    async def close(self) -> None:
        """Release the connection; run() returns after the current message."""
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()
