"""Broadcast channel for storage changes between session contexts

Each token store publishes ``StorageChange`` messages for the keys it writes;
other stores attached to the same channel react to them. Delivery is
synchronous and in subscription order. There is no locking or merging across
contexts: the last writer wins.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageChange:
    """One durable-storage write; ``new_value`` is None for removals"""
    key: str
    new_value: Optional[str]


Listener = Callable[[StorageChange], None]


class BroadcastChannel:
    """In-process publish/subscribe channel"""

    def __init__(self, name: str = "session"):
        self.name = name
        self._subscribers: List[Tuple[str, Listener]] = []

    def subscribe(self, subscriber_id: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it"""
        entry = (subscriber_id, listener)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, sender_id: str, change: StorageChange) -> None:
        """Deliver ``change`` to every subscriber except the sender"""
        for subscriber_id, listener in list(self._subscribers):
            if subscriber_id == sender_id:
                continue
            try:
                listener(change)
            except Exception:
                logger.exception(f"Listener {subscriber_id} failed handling change to {change.key}")
