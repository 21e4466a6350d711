from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import SubscriptionError, TransportError
from .models import ConversationKey, Message
from .persistence import Persistence, PushChannel

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_CONNECTED = "connected"
STATE_DEGRADED = "degraded"
STATE_FAILED = "failed"

EventHandler = Callable[[Message], None]
StateCallback = Callable[[str], None]
ReconnectCallback = Callable[[ConversationKey], Awaitable[None]]
ErrorCallback = Callable[[ConversationKey, SubscriptionError], None]


@dataclass(eq=False)
class SubscriptionToken:
    key: ConversationKey
    generation: int
    active: bool = True


@dataclass(eq=False)
class _Entry:
    token: SubscriptionToken
    on_event: EventHandler
    channel: Optional[PushChannel] = None
    reconnect_task: Optional[asyncio.Task] = field(default=None)


class PushSubscriptionManager:
    """Keeps at most one push subscription per conversation for one viewer.

    Events arriving on a token that has been unsubscribed or replaced are
    dropped. A dropped connection is retried ``max_reconnect_attempts`` times
    with linear backoff before the subscription is given up and reported
    through ``on_error``.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        max_reconnect_attempts: int = 3,
        reconnect_backoff_s: float = 0.5,
        on_state_change: StateCallback | None = None,
        on_reconnect: ReconnectCallback | None = None,
        on_error: ErrorCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._persistence = persistence
        self._max_attempts = max_reconnect_attempts
        self._backoff_s = reconnect_backoff_s
        self._on_state_change = on_state_change
        self._on_reconnect = on_reconnect
        self._on_error = on_error
        self._sleep = sleep
        self._entries: Dict[ConversationKey, _Entry] = {}
        self._generations = itertools.count(1)
        self._failed = False
        self._switches = 0
        self.state = STATE_IDLE
        self.current: SubscriptionToken | None = None
        self.last_error: SubscriptionError | None = None

    def active_keys(self) -> List[ConversationKey]:
        return list(self._entries)

    def is_active(self, token: SubscriptionToken) -> bool:
        entry = self._entries.get(token.key)
        return token.active and entry is not None and entry.token is token

    async def subscribe(self, key: ConversationKey, on_event: EventHandler) -> SubscriptionToken:
        existing = self._entries.get(key)
        if existing is not None:
            await self._close_entry(existing)

        token = SubscriptionToken(key=key, generation=next(self._generations))
        entry = _Entry(token=token, on_event=on_event)
        self._entries[key] = entry
        try:
            channel = await self._open(entry)
        except TransportError as exc:
            token.active = False
            if self._entries.get(key) is entry:
                del self._entries[key]
            self._refresh_state()
            raise SubscriptionError(f"could not subscribe to {key}: {exc}", attempts=1) from exc

        if not token.active:
            # Unsubscribed while the channel was opening.
            await self._close_channel(channel, key)
            return token
        entry.channel = channel
        self._failed = False
        self._refresh_state()
        logger.info("subscribed to %s (generation %d)", key, token.generation)
        return token

    async def unsubscribe(self, token: SubscriptionToken) -> None:
        token.active = False
        entry = self._entries.get(token.key)
        if entry is None or entry.token is not token:
            return
        await self._close_entry(entry)
        if self.current is token:
            self.current = None
        self._refresh_state()

    async def switch(self, key: ConversationKey, on_event: EventHandler) -> SubscriptionToken:
        """Make ``key`` the single displayed conversation, dropping the previous one first."""

        self._switches += 1
        switch_id = self._switches
        previous = self.current
        self.current = None
        if previous is not None and previous.key != key:
            await self.unsubscribe(previous)
        token = await self.subscribe(key, on_event)
        if switch_id != self._switches:
            # Superseded by a newer switch while subscribing.
            await self.unsubscribe(token)
            return token
        self.current = token
        return token

    async def close_all(self) -> None:
        entries = list(self._entries.values())
        for entry in entries:
            entry.token.active = False
        for entry in entries:
            await self._close_entry(entry)
        self.current = None
        self._failed = False
        self._refresh_state()

    async def _open(self, entry: _Entry) -> PushChannel:
        token = entry.token

        def deliver(message: Message) -> None:
            if not token.active:
                logger.info("dropping late event %s for %s", message.id, token.key)
                return
            entry.on_event(message)

        def disconnected(exc: Exception) -> None:
            if not token.active:
                return
            self._handle_disconnect(entry, exc)

        return await self._persistence.subscribe_messages(token.key, deliver, disconnected)

    def _handle_disconnect(self, entry: _Entry, exc: Exception) -> None:
        logger.warning("push channel for %s dropped: %s", entry.token.key, exc)
        entry.channel = None
        if entry.reconnect_task is None or entry.reconnect_task.done():
            entry.reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(entry))
        self._refresh_state()

    async def _reconnect(self, entry: _Entry) -> None:
        token = entry.token
        attempts = 0
        last_exc: Exception | None = None
        while attempts < self._max_attempts:
            attempts += 1
            await self._sleep(self._backoff_s * attempts)
            if not token.active:
                return
            try:
                channel = await self._open(entry)
            except TransportError as exc:
                last_exc = exc
                logger.warning("reconnect %d/%d for %s failed: %s", attempts, self._max_attempts, token.key, exc)
                continue
            if not token.active:
                await self._close_channel(channel, token.key)
                return
            entry.channel = channel
            entry.reconnect_task = None
            self._refresh_state()
            logger.info("resubscribed to %s after %d attempt(s)", token.key, attempts)
            if self._on_reconnect is not None:
                await self._on_reconnect(token.key)
            return

        error = SubscriptionError(
            f"gave up on {token.key} after {attempts} reconnect attempt(s): {last_exc}",
            attempts=attempts,
        )
        token.active = False
        if self._entries.get(token.key) is entry:
            del self._entries[token.key]
        if self.current is token:
            self.current = None
        entry.reconnect_task = None
        self.last_error = error
        self._failed = True
        self._refresh_state()
        if self._on_error is not None:
            self._on_error(token.key, error)

    async def _close_entry(self, entry: _Entry) -> None:
        entry.token.active = False
        if self._entries.get(entry.token.key) is entry:
            del self._entries[entry.token.key]
        task = entry.reconnect_task
        entry.reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        channel = entry.channel
        entry.channel = None
        if channel is not None:
            await self._close_channel(channel, entry.token.key)
        logger.info("unsubscribed from %s (generation %d)", entry.token.key, entry.token.generation)

    async def _close_channel(self, channel: PushChannel, key: ConversationKey) -> None:
        try:
            await channel.close()
        except TransportError as exc:
            logger.warning("closing push channel for %s failed: %s", key, exc)

    def _refresh_state(self) -> None:
        reconnecting = any(
            entry.reconnect_task is not None and not entry.reconnect_task.done() for entry in self._entries.values()
        )
        if reconnecting:
            state = STATE_DEGRADED
        elif self._failed:
            state = STATE_FAILED
        elif self._entries:
            state = STATE_CONNECTED
        else:
            state = STATE_IDLE
        if state != self.state:
            self.state = state
            if self._on_state_change is not None:
                self._on_state_change(state)
