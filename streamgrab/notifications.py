"""Live progress fan-out: one server-sent-event channel per client identifier."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Dict, Iterator, List, Optional

from streamgrab.progress import ProgressEvent

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ":\n\n"
IDLE_FRAME = ": keep-alive\n\n"

_KEEPALIVE = object()
_CLOSE = object()


class ClientChannel:
    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._queue.put(_KEEPALIVE)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, event: ProgressEvent) -> bool:
        if self._closed.is_set():
            return False
        self._queue.put(event)
        return True

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSE)

    def frames(self, keepalive_interval: float = 15.0) -> Iterator[str]:
        """Yield SSE frames until the channel is closed."""
        while True:
            try:
                item = self._queue.get(timeout=keepalive_interval)
            except queue.Empty:
                yield IDLE_FRAME
                continue
            if item is _CLOSE:
                return
            if item is _KEEPALIVE:
                yield KEEPALIVE_FRAME
                continue
            yield item.to_sse()  # type: ignore[attr-defined]


class NotificationHub:
    def __init__(self) -> None:
        self._channels: Dict[str, ClientChannel] = {}
        self._lock = threading.Lock()

    def subscribe(self, client_id: str) -> ClientChannel:
        channel = ClientChannel(client_id)
        with self._lock:
            previous = self._channels.get(client_id)
            self._channels[client_id] = channel
        if previous is not None:
            logger.debug("Client %s reconnected; closing previous channel", client_id)
            previous.close()
        return channel

    def unsubscribe(self, client_id: str, channel: Optional[ClientChannel] = None) -> None:
        """Drop the channel for client_id.

        When channel is given, only that exact channel is removed, so a handler
        for a displaced connection cannot evict its replacement.
        """
        with self._lock:
            current = self._channels.get(client_id)
            if current is None:
                return
            if channel is not None and current is not channel:
                return
            del self._channels[client_id]
        current.close()

    def publish(self, client_id: str, event: ProgressEvent) -> bool:
        with self._lock:
            channel = self._channels.get(client_id)
        if channel is None:
            return False
        return channel.put(event)

    def is_subscribed(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._channels

    def close_all(self) -> None:
        with self._lock:
            channels: List[ClientChannel] = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.close()
