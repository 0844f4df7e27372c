"""
Run-scoped message routing between execution contexts and the host.

Each run owns exactly one subscription. Replacing a run unsubscribes the old
one, so anything its context still sends is dropped here instead of reaching
host state.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import Callable

from ..core.logging import get_logger
from .messages import Message

logger = get_logger(__name__)

MessageCallback = Callable[[Message], None]


@dataclass(slots=True)
class Subscription:
    """Binding between one run id and the callback receiving its messages."""

    run_id: str
    callback: MessageCallback
    active: bool = True


class MessageChannel:
    """In-process router from context deliveries to run subscriptions."""

    def __init__(self):
        self._lock = RLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._discarded = 0

    def subscribe(self, run_id: str, callback: MessageCallback) -> Subscription:
        """Route messages tagged with ``run_id`` to ``callback``."""
        subscription = Subscription(run_id=run_id, callback=callback)
        with self._lock:
            previous = self._subscriptions.get(run_id)
            if previous is not None:
                previous.active = False
            self._subscriptions[run_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription | None) -> None:
        """Detach a subscription. Safe to call twice or with None."""
        if subscription is None:
            return
        with self._lock:
            subscription.active = False
            current = self._subscriptions.get(subscription.run_id)
            if current is subscription:
                del self._subscriptions[subscription.run_id]

    def publish(self, message: Message) -> bool:
        """
        Deliver a message to its run's subscriber.

        Returns:
            True if a subscriber received the message, False if it was stale.
        """
        with self._lock:
            subscription = self._subscriptions.get(message.run_id)
            if subscription is None or not subscription.active:
                self._discarded += 1
                logger.debug(
                    "Discarding stale %s message from run %s", message.kind.value, message.run_id
                )
                return False

        # Dispatch outside lock
        try:
            subscription.callback(message)
        except Exception:
            logger.exception("Subscriber for run %s failed to handle message", message.run_id)
        return True

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            for subscription in self._subscriptions.values():
                subscription.active = False
            self._subscriptions.clear()

    @property
    def discarded_count(self) -> int:
        """Number of messages dropped because their run was no longer subscribed."""
        with self._lock:
            return self._discarded

    @property
    def active_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)
