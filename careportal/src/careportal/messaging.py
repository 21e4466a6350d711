"""Wiring of the coordination engine for one signed-in actor.

``MessagingSession`` is the surface a UI talks to. It owns the notion of the
active conversation: opening one switches the push subscription, loads the
history (dropping it if the user has moved on by the time it arrives) and
marks the conversation read. Push events are the only steady-state update
path; history is fetched again only after a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Set, Tuple

from .appointments import AppointmentStore
from .config import PortalConfig
from .contacts import ContactDirectory
from .conversations import ConversationStore
from .errors import FetchError, PortalError, SubscriptionError, ValidationError
from .models import Actor, Contact, ConversationKey, Message, _now_ms
from .persistence import Persistence
from .read_tracker import ReadTracker
from .subscriptions import PushSubscriptionManager

logger = logging.getLogger(__name__)


class MessagingSession:
    def __init__(
        self,
        persistence: Persistence,
        actor: Actor,
        *,
        config: PortalConfig | None = None,
        now_func: Callable[[], int] = _now_ms,
        on_state_change: Callable[[str], None] | None = None,
    ) -> None:
        self.actor = actor
        self.config = config or PortalConfig()
        self._persistence = persistence
        self._on_state_change = on_state_change
        self.appointments = AppointmentStore(
            persistence,
            now_func=now_func,
            default_duration_minutes=self.config.default_duration_minutes,
        )
        self.conversations = ConversationStore(
            persistence,
            actor.id,
            now_func=now_func,
            echo_window_ms=self.config.echo_window_ms,
            history_limit=self.config.history_limit_or_none,
            on_change=self._conversation_changed,
        )
        self.directory = ContactDirectory(persistence, self.appointments, self.conversations)
        self.read_tracker = ReadTracker(persistence, self.conversations, self.directory, now_func=now_func)
        self.subscriptions = PushSubscriptionManager(
            persistence,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            reconnect_backoff_s=self.config.reconnect_backoff_s,
            on_state_change=self._subscription_state_changed,
            on_reconnect=self._resync,
            on_error=self._subscription_failed,
        )
        self.active_key: ConversationKey | None = None
        self.errors: List[PortalError] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> str:
        return self.subscriptions.state

    def key_for(self, counterpart_id: str) -> ConversationKey:
        return ConversationKey.of(self.actor.id, counterpart_id)

    async def start(self) -> List[Contact]:
        return await self.directory.build(self.actor.id, self.actor.role)

    def contacts(self) -> List[Contact]:
        return self.directory.contacts()

    def messages(self) -> Tuple[Message, ...]:
        if self.active_key is None:
            return ()
        return self.conversations.messages(self.active_key)

    async def open_conversation(self, counterpart_id: str) -> Optional[Tuple[Message, ...]]:
        """Make ``counterpart_id`` the active conversation.

        Returns the loaded history, or None when another conversation was
        opened while this one was loading.
        """

        key = self.key_for(counterpart_id)
        self.active_key = key
        await self.subscriptions.switch(key, lambda message, key=key: self._on_push(key, message))
        if self.active_key != key:
            return None
        fetched = await self.conversations.fetch_history(key)
        if self.active_key != key:
            logger.info("discarding stale history for %s", key)
            return None
        history = self.conversations.apply_history(key, fetched)
        await self.read_tracker.mark_read(key)
        return history

    async def close_conversation(self) -> None:
        self.active_key = None
        token = self.subscriptions.current
        if token is not None:
            await self.subscriptions.unsubscribe(token)

    def send(self, text: str) -> Message:
        if self.active_key is None:
            raise ValidationError("no active conversation")
        return self.conversations.send(self.active_key, text)

    def retry(self, local_id: str) -> Message:
        if self.active_key is None:
            raise ValidationError("no active conversation")
        return self.conversations.retry(self.active_key, local_id)

    def _on_push(self, key: ConversationKey, message: Message) -> None:
        if key != self.active_key:
            logger.info("ignoring push for inactive conversation %s", key)
            return
        if not self.conversations.ingest(key, message):
            return
        if message.sender_id != self.actor.id:
            self._spawn(self._mark_read_after_push(key))

    async def _mark_read_after_push(self, key: ConversationKey) -> None:
        if key != self.active_key:
            return
        try:
            await self.read_tracker.mark_read(key)
        except FetchError as exc:
            logger.warning("could not mark %s read: %s", key, exc)
            self.errors.append(exc)

    def _conversation_changed(self, key: ConversationKey) -> None:
        latest = self.conversations.latest_local(key)
        if latest is not None:
            self.directory.apply_message(latest)

    async def _resync(self, key: ConversationKey) -> None:
        if key != self.active_key:
            return
        try:
            fetched = await self.conversations.fetch_history(key)
        except FetchError as exc:
            logger.warning("history reload after reconnect failed for %s: %s", key, exc)
            self.errors.append(exc)
            return
        if key != self.active_key:
            return
        self.conversations.apply_history(key, fetched)
        await self._mark_read_after_push(key)

    def _subscription_state_changed(self, state: str) -> None:
        logger.info("push state for %s is now %s", self.actor.id, state)
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _subscription_failed(self, key: ConversationKey, error: SubscriptionError) -> None:
        logger.error("push subscription for %s failed: %s", key, error)
        self.errors.append(error)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait for in-flight sends and read marks."""

        while True:
            await self.conversations.settle()
            tasks = [task for task in self._tasks if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks)

    async def session_lost(self) -> None:
        """Tear down every subscription; called when authentication is lost."""

        logger.warning("session lost for %s; closing subscriptions", self.actor.id)
        self.active_key = None
        await self.subscriptions.close_all()

    async def close(self) -> None:
        self.active_key = None
        await self.subscriptions.close_all()
        await self.settle()
