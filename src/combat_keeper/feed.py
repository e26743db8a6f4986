"""
Change feed: row-level notifications for committed writes.

The store publishes one ChangeNotification per changed record after each
commit. Subscribers receive them through an asyncio queue, optionally
filtered to one encounter. Delivery is at-least-once from the
consumer's point of view: a reconnecting client may see a record again
and notifications for different records may arrive in any order, so
consumers merge by record version instead of applying deltas.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("combat-keeper.feed")


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeNotification(BaseModel):
    """One record changed.

    ``record`` carries the row as committed; it may be omitted, in which
    case the consumer refetches the record by table and id.
    """
    table: str
    event: ChangeEvent
    record_id: str
    encounter_id: str | None = None
    version: int
    record: dict[str, Any] | None = None
    sequence: int = 0
    committed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def without_record(self) -> "ChangeNotification":
        return self.model_copy(update={"record": None})


class Subscription:
    """A consumer's view of the feed."""

    def __init__(self, feed: "ChangeFeed", encounter_id: str | None, maxsize: int) -> None:
        self._feed = feed
        self.encounter_id = encounter_id
        self.queue: asyncio.Queue[ChangeNotification] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, notification: ChangeNotification) -> bool:
        return self.encounter_id is None or notification.encounter_id == self.encounter_id

    def offer(self, notification: ChangeNotification) -> None:
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Subscriber queue full for encounter {self.encounter_id}; "
                f"dropped {notification.table}/{notification.record_id}"
            )

    async def get(self, timeout: float | None = None) -> ChangeNotification:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> list[ChangeNotification]:
        """Return every notification currently queued."""
        items = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items

    def close(self) -> None:
        self._feed.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeNotification:
        return await self.queue.get()


class ChangeFeed:
    """In-process pub/sub for committed record changes."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._subscriptions: list[Subscription] = []
        self._queue_size = queue_size
        self._sequence = 0

    def subscribe(self, encounter_id: str | None = None) -> Subscription:
        sub = Subscription(self, encounter_id, self._queue_size)
        self._subscriptions.append(sub)
        logger.debug(f"Feed subscriber added (encounter={encounter_id}, total={len(self._subscriptions)})")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, notifications: list[ChangeNotification]) -> None:
        """Fan notifications out to every matching subscriber."""
        for notification in notifications:
            self._sequence += 1
            notification.sequence = self._sequence
            for sub in list(self._subscriptions):
                if sub.matches(notification):
                    sub.offer(notification)
