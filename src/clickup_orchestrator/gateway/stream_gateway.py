"""Fan-out of process output to connected WebSocket clients."""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

from clickup_orchestrator.process.supervisor import (
    OutputLine,
    ProcessStarted,
    SupervisorEvent,
)

logger = logging.getLogger(__name__)


def output_message(line: OutputLine) -> dict[str, Any]:
    return {"type": "output", "line": line.line, "is_stderr": line.is_stderr}


@dataclass
class _Channel:
    buffer: deque[OutputLine]
    subscribers: set[asyncio.Queue[dict[str, Any]]] = field(default_factory=set)


@dataclass
class Subscription:
    """A client's view of one key: replayed history plus a live queue."""

    key: str
    replay: list[dict[str, Any]]
    queue: asyncio.Queue[dict[str, Any]]


class StreamGateway:
    """Per-key subscriber sets and replay buffers.

    Registered as a process supervisor listener. A client that connects late,
    or reconnects, first receives the buffered lines of the current run and
    then live lines, without gaps or duplicates.
    """

    def __init__(self, replay_buffer_lines: int = 2000) -> None:
        self._replay_buffer_lines = replay_buffer_lines
        self._channels: dict[str, _Channel] = {}

    def __call__(self, event: SupervisorEvent) -> None:
        if isinstance(event, ProcessStarted):
            self._channel(event.key).buffer.clear()
        elif isinstance(event, OutputLine):
            channel = self._channel(event.key)
            channel.buffer.append(event)
            message = output_message(event)
            for queue in channel.subscribers:
                queue.put_nowait(message)

    def subscribe(self, key: str) -> Subscription:
        """Register a client queue and snapshot the replay buffer atomically."""
        channel = self._channel(key)
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        channel.subscribers.add(queue)
        replay = [output_message(line) for line in channel.buffer]
        logger.info(
            f"[Gateway] Client subscribed to {key} "
            f"(clients: {len(channel.subscribers)}, replay: {len(replay)} lines)"
        )
        return Subscription(key=key, replay=replay, queue=queue)

    def unsubscribe(self, subscription: Subscription) -> None:
        channel = self._channels.get(subscription.key)
        if channel is None:
            return
        channel.subscribers.discard(subscription.queue)
        logger.info(
            f"[Gateway] Client unsubscribed from {subscription.key} "
            f"(clients: {len(channel.subscribers)})"
        )

    def subscriber_count(self, key: str) -> int:
        channel = self._channels.get(key)
        return len(channel.subscribers) if channel else 0

    def buffered_lines(self, key: str) -> list[str]:
        channel = self._channels.get(key)
        return [line.line for line in channel.buffer] if channel else []

    def forget(self, key: str) -> None:
        """Drop the buffer of a deleted task or session."""
        channel = self._channels.get(key)
        if channel is not None and not channel.subscribers:
            del self._channels[key]

    def _channel(self, key: str) -> _Channel:
        channel = self._channels.get(key)
        if channel is None:
            channel = _Channel(buffer=deque(maxlen=self._replay_buffer_lines))
            self._channels[key] = channel
        return channel


async def send_json(websocket: WebSocket, message: dict[str, Any]) -> bool:
    """Send one message; return False if the client is gone."""
    try:
        await websocket.send_text(json.dumps(message))
        return True
    except Exception as e:
        logger.warning(f"[Gateway] Failed to send to client: {e}")
        return False


async def pump(websocket: WebSocket, subscription: Subscription) -> None:
    """Deliver replayed and live messages to the socket until it fails."""
    for message in subscription.replay:
        if not await send_json(websocket, message):
            return
    while True:
        message = await subscription.queue.get()
        if not await send_json(websocket, message):
            return
