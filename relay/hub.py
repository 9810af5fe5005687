"""
Subscriber fan-out for live progress streams.

Each HTTP progress stream owns one SubscriberChannel. Broadcasting writes the
serialized event into every channel bound to the project, in attach order,
without awaiting, so events leave the hub in the order they came in.
A channel that cannot take a write is dropped; the others still get it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator, Dict, Optional

from relay.errors import DeliveryError
from relay.logging_utils import get_logger
from shared.schemas import RelayEvent, to_sse

log = logging.getLogger("render-relay.hub")
slog = get_logger()

KEEPALIVE_COMMENT = ": keepalive\n\n"


class SubscriberChannel:
    """A bounded queue of SSE messages feeding one client connection."""

    def __init__(self, project_id: str, max_pending: int = 256):
        self.project_id = project_id
        self.channel_id = uuid.uuid4().hex[:8]
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def write(self, message: str) -> None:
        if self._closed:
            raise DeliveryError(f"Channel {self.channel_id} is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull as exc:
            raise DeliveryError(f"Channel {self.channel_id} is not draining") from exc

    def close(self) -> None:
        """Stop accepting writes; the reader still drains what is queued."""
        if self._closed:
            return
        self._closed = True
        try:
            # Wake a reader blocked on an empty queue
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def stream(self, keepalive: Optional[float] = None) -> AsyncIterator[str]:
        """Yield queued messages in order until the channel is closed and drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                if keepalive:
                    message = await asyncio.wait_for(self._queue.get(), timeout=keepalive)
                else:
                    message = await self._queue.get()
            except asyncio.TimeoutError:
                yield KEEPALIVE_COMMENT
                continue
            if message is None:
                continue
            yield message


class FanoutHub:
    """project id -> attached subscriber channels."""

    def __init__(self, max_pending: int = 256):
        self._max_pending = max_pending
        self._channels: Dict[str, Dict[str, SubscriberChannel]] = {}

    def attach(self, project_id: str, channel: Optional[SubscriberChannel] = None) -> SubscriberChannel:
        if channel is None:
            channel = SubscriberChannel(project_id, self._max_pending)
        bound = self._channels.setdefault(project_id, {})
        if channel.channel_id not in bound:
            bound[channel.channel_id] = channel
            slog.info(
                "subscriber_attached",
                project_id=project_id,
                channel_id=channel.channel_id,
                subscribers=len(bound),
            )
        return channel

    def detach(self, project_id: str, channel: SubscriberChannel) -> bool:
        bound = self._channels.get(project_id)
        if not bound or bound.pop(channel.channel_id, None) is None:
            return False
        if not bound:
            self._channels.pop(project_id, None)
        slog.info(
            "subscriber_detached",
            project_id=project_id,
            channel_id=channel.channel_id,
            subscribers=len(bound),
        )
        return True

    def broadcast(self, project_id: str, event: RelayEvent) -> int:
        """Write ``event`` to every channel of the project. Returns the number of successful writes."""
        bound = self._channels.get(project_id)
        if not bound:
            return 0

        message = to_sse(project_id, event)
        delivered = 0
        for channel_id, channel in list(bound.items()):
            try:
                channel.write(message)
                delivered += 1
            except DeliveryError as exc:
                bound.pop(channel_id, None)
                channel.close()
                slog.warning("subscriber_dropped", project_id=project_id, channel_id=channel_id, error=str(exc))
        if not bound:
            self._channels.pop(project_id, None)
        log.debug("Broadcast %s to %d subscribers of %s", event.type, delivered, project_id)
        return delivered

    def close_project(self, project_id: str) -> int:
        """Close and unbind every channel of a project. Queued messages still reach their readers."""
        bound = self._channels.pop(project_id, None) or {}
        for channel in bound.values():
            channel.close()
        return len(bound)

    def subscriber_count(self, project_id: str) -> int:
        return len(self._channels.get(project_id, {}))

    def project_ids(self):
        return list(self._channels)
