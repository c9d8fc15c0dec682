from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List


Callback = Callable[[dict], None]


@dataclass(eq=False)
class Subscription:
    connection_id: str
    topic: str
    callback: Callback

    def deliver(self, frame: dict) -> None:
        self.callback(frame)


class SubscriptionHub:
    """Registers topic subscriptions and broadcasts frames to all listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, connection_id: str, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(connection_id=connection_id, topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def broadcast(self, topic: str, frame: dict) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            subscription.deliver(frame)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))
