"""
Swap service event stream over WebSocket.

The stream keeps the set of subscribed swap ids so a dropped connection can
be re-established and every tracked swap resubscribed transparently.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from loguru import logger
from pydantic import ValidationError
from swapcore.constants import SWAP_UPDATE_CHANNEL
from swapcore.models import StreamMessage
from websockets.exceptions import WebSocketException


def parse_message(raw: str | bytes) -> StreamMessage | None:
    """Decode one stream frame; malformed frames are logged and dropped."""
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning(f"Dropping non-JSON stream frame: {raw[:80]!r}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Dropping unexpected stream frame: {data!r}")
        return None
    try:
        return StreamMessage.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Dropping invalid stream frame: {e}")
        return None


class SwapEventStream:
    """Lazy, restartable sequence of stream messages."""

    def __init__(
        self,
        url: str,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.url = url
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self._connect = connect
        self._ws: Any = None
        self._subscribed: set[str] = set()
        self._closed = False

    @property
    def subscriptions(self) -> set[str]:
        return set(self._subscribed)

    async def connect(self) -> None:
        logger.debug(f"Connecting to swap event stream at {self.url}")
        self._ws = await self._connect(self.url, ping_interval=20, ping_timeout=20)
        if self._subscribed:
            await self._send("subscribe", sorted(self._subscribed))
        logger.info(f"Connected to swap event stream ({len(self._subscribed)} subscriptions)")

    async def _send(self, op: str, swap_ids: list[str]) -> None:
        await self._ws.send(json.dumps({"op": op, "channel": SWAP_UPDATE_CHANNEL, "args": swap_ids}))

    async def subscribe(self, swap_ids: list[str]) -> None:
        new_ids = [swap_id for swap_id in swap_ids if swap_id not in self._subscribed]
        if not new_ids:
            return
        self._subscribed.update(new_ids)
        if self._ws is not None:
            await self._send("subscribe", new_ids)
        logger.debug(f"Subscribed to {new_ids}")

    async def unsubscribe(self, swap_ids: list[str]) -> None:
        removed = [swap_id for swap_id in swap_ids if swap_id in self._subscribed]
        if not removed:
            return
        self._subscribed.difference_update(removed)
        if self._ws is None:
            return
        try:
            await self._send("unsubscribe", removed)
        except (WebSocketException, OSError) as e:
            # Not resubscribed on reconnect, so nothing else to do
            logger.debug(f"Unsubscribe of {removed} not sent: {e}")
        logger.debug(f"Unsubscribed from {removed}")

    async def messages(self) -> AsyncIterator[StreamMessage]:
        """Yield messages forever, reconnecting with backoff until closed."""
        delay = self.reconnect_base_delay
        while not self._closed:
            try:
                if self._ws is None:
                    await self.connect()
                delay = self.reconnect_base_delay
                async for raw in self._ws:
                    message = parse_message(raw)
                    if message is not None:
                        yield message
            except (WebSocketException, OSError) as e:
                logger.warning(f"Swap event stream error: {e}")

            if self._closed:
                break
            self._ws = None
            logger.info(f"Swap event stream disconnected, reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max_delay)

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
