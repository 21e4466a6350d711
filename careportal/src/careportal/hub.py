from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List

from .errors import TransportError
from .models import ConversationKey, Message


MessageCallback = Callable[[Message], None]
DisconnectCallback = Callable[[Exception], None]


@dataclass(eq=False)
class Subscription:
    key: ConversationKey
    callback: MessageCallback
    on_disconnect: DisconnectCallback | None = None
    closed: bool = field(default=False)

    def deliver(self, message: Message) -> None:
        if not self.closed:
            self.callback(message)


class SubscriptionHub:
    """Registers push subscriptions per conversation and fans out inserted messages."""

    def __init__(self) -> None:
        self._subscriptions: Dict[ConversationKey, List[Subscription]] = {}

    def subscribe(
        self,
        key: ConversationKey,
        callback: MessageCallback,
        on_disconnect: DisconnectCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(key=key, callback=callback, on_disconnect=on_disconnect)
        self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        subs = self._subscriptions.get(subscription.key)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.key, None)

    def broadcast(self, message: Message) -> None:
        for subscription in list(self._subscriptions.get(message.key, [])):
            subscription.deliver(message)

    def disconnect_all(self, reason: str = "connection lost") -> int:
        """Drop every subscription, notifying each through its disconnect callback."""

        dropped = [sub for subs in self._subscriptions.values() for sub in subs]
        self._subscriptions.clear()
        for subscription in dropped:
            subscription.closed = True
            if subscription.on_disconnect is not None:
                subscription.on_disconnect(TransportError(reason))
        return len(dropped)

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for subscription in subs:
                subscription.closed = True
        self._subscriptions.clear()

    def count(self, key: ConversationKey | None = None) -> int:
        if key is not None:
            return len(self._subscriptions.get(key, []))
        return sum(len(subs) for subs in self._subscriptions.values())
