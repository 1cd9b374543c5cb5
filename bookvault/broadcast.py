"""
In-process broadcast channel for propagating sync results between sessions.

Several sessions (tabs, windows, worker threads) can share one hub. A
session publishes typed messages on a topic; every other subscriber of
that topic receives them. Publishers never receive their own messages.

Messages carry ciphertext and versions only: each receiving session
decrypts with its own unlocked key.

Usage:
    hub = BroadcastHub()
    channel = hub.channel("sync")
    channel.on_message(lambda msg: ...)
    channel.publish(RECORD_RECEIVED, {"recordId": "...", "version": 3})
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Message types
RECORD_RECEIVED = "record-received"
SYNC_COMPLETED = "sync-completed"


@dataclass
class BroadcastMessage:
    topic: str
    type: str
    sender: str
    payload: Dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BroadcastChannel:
    """One session's handle on a hub topic."""

    def __init__(self, hub: "BroadcastHub", topic: str):
        self.hub = hub
        self.topic = topic
        self.sender_id = uuid.uuid4().hex
        self._callbacks: List[Callable[[BroadcastMessage], None]] = []
        self._closed = False

    def on_message(self, callback: Callable[[BroadcastMessage], None]) -> None:
        self._callbacks.append(callback)

    def publish(self, message_type: str, payload: Dict[str, Any]) -> BroadcastMessage:
        message = BroadcastMessage(
            topic=self.topic, type=message_type, sender=self.sender_id, payload=payload
        )
        self.hub._dispatch(message)
        return message

    def close(self) -> None:
        self._closed = True
        self.hub._detach(self)

    def _deliver(self, message: BroadcastMessage) -> None:
        if self._closed or message.sender == self.sender_id:
            return
        for callback in list(self._callbacks):
            try:
                callback(message)
            except Exception as e:
                # One misbehaving listener must not block delivery to the rest
                logger.warning(f"Broadcast listener failed for {message.type}: {e}", exc_info=True)


class BroadcastHub:
    """Routes messages between channels on the same topic."""

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[str, List[BroadcastChannel]] = {}

    def channel(self, topic: str) -> BroadcastChannel:
        channel = BroadcastChannel(self, topic)
        with self._lock:
            self._channels.setdefault(topic, []).append(channel)
        return channel

    def _detach(self, channel: BroadcastChannel) -> None:
        with self._lock:
            peers = self._channels.get(channel.topic, [])
            if channel in peers:
                peers.remove(channel)

    def _dispatch(self, message: BroadcastMessage) -> None:
        with self._lock:
            peers = list(self._channels.get(message.topic, []))
        for peer in peers:
            peer._deliver(message)
