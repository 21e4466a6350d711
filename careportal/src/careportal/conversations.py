"""Per-conversation message history with optimistic sends and push merging.

A thread is kept sorted by ``(created_at_ms, id)`` at all times. Three paths
mutate it: optimistic sends (and their reconciliation), push-delivered
messages (``ingest``) and full history fetches (``apply_history``). Each
mutation is applied synchronously, so it completes inside a single event-loop
turn; the only awaits are the network calls themselves.

Echoes of our own sends are matched by the ``client_key`` that every send
carries. When a server does not echo the key, a pending entry with the same
sender and text inside ``echo_window_ms`` is taken as the match instead.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
import secrets
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from .errors import FetchError, NotFoundError, TransportError, ValidationError, WriteRejected
from .models import (
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_SENT,
    TEMP_ID_PREFIX,
    ConversationKey,
    Message,
    _now_ms,
)
from .persistence import Persistence

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ConversationKey], None]


def _sort_key(message: Message) -> Tuple[int, str]:
    return message.sort_key


def _position(thread: List[Message], message_id: str) -> Optional[int]:
    for index, message in enumerate(thread):
        if message.id == message_id:
            return index
    return None


def _insert_sorted(thread: List[Message], message: Message) -> None:
    bisect.insort(thread, message, key=_sort_key)


def _replace_at(thread: List[Message], index: int, message: Message) -> None:
    """Swap ``thread[index]`` for ``message``, moving it only if order would break."""

    before_ok = index == 0 or thread[index - 1].sort_key <= message.sort_key
    after_ok = index == len(thread) - 1 or message.sort_key <= thread[index + 1].sort_key
    if before_ok and after_ok:
        thread[index] = message
        return
    del thread[index]
    _insert_sorted(thread, message)


class ConversationStore:
    """Holds ordered message history for every conversation of one viewer."""

    def __init__(
        self,
        persistence: Persistence,
        viewer_id: str,
        *,
        now_func: Callable[[], int] = _now_ms,
        echo_window_ms: int = 5000,
        history_limit: int | None = None,
        on_change: ChangeCallback | None = None,
    ) -> None:
        self._persistence = persistence
        self.viewer_id = viewer_id
        self._now = now_func
        self._echo_window_ms = echo_window_ms
        self._history_limit = history_limit
        self._on_change = on_change
        self._threads: Dict[ConversationKey, List[Message]] = {}
        self._sends: Dict[str, asyncio.Task] = {}
        self._temp_ids = itertools.count(1)

    def messages(self, key: ConversationKey) -> Tuple[Message, ...]:
        return tuple(self._threads.get(key, ()))

    def latest_local(self, key: ConversationKey) -> Optional[Message]:
        thread = self._threads.get(key)
        return thread[-1] if thread else None

    def conversations(self) -> List[ConversationKey]:
        return list(self._threads)

    def _changed(self, key: ConversationKey) -> None:
        if self._on_change is not None:
            self._on_change(key)

    def _thread(self, key: ConversationKey) -> List[Message]:
        if not key.includes(self.viewer_id):
            raise ValidationError(f"{self.viewer_id} is not part of conversation {key}")
        return self._threads.setdefault(key, [])

    async def fetch_history(self, key: ConversationKey) -> List[Message]:
        """Fetch the authoritative history without touching local state."""

        limit = self._history_limit
        try:
            if limit:
                newest = await self._persistence.list_messages(key, limit=limit, newest_first=True)
                return list(reversed(newest))
            return await self._persistence.list_messages(key)
        except TransportError as exc:
            raise FetchError(f"could not load history for {key}: {exc}") from exc

    def apply_history(self, key: ConversationKey, fetched: List[Message]) -> Tuple[Message, ...]:
        """Replace the thread with ``fetched`` while keeping local-only entries.

        Optimistic entries the server does not know yet survive, as do pushed
        messages newer than the fetch. Read marks are never rolled back.
        """

        previous = self._thread(key)
        merged = sorted((replace(message, delivery=DELIVERY_SENT) for message in fetched), key=_sort_key)
        fetched_ids = {message.id for message in merged}
        fetched_keys = {message.client_key for message in merged if message.client_key}
        read_marks = {message.id: message.read_at_ms for message in previous if message.read_at_ms is not None}

        for index, message in enumerate(merged):
            if message.read_at_ms is None and message.id in read_marks:
                merged[index] = replace(message, read_at_ms=read_marks[message.id])
        for message in previous:
            if message.is_optimistic:
                if message.client_key in fetched_keys:
                    continue
                _insert_sorted(merged, message)
            elif message.id not in fetched_ids:
                _insert_sorted(merged, message)

        self._threads[key] = merged
        self._changed(key)
        return tuple(merged)

    async def history(self, key: ConversationKey) -> Tuple[Message, ...]:
        fetched = await self.fetch_history(key)
        return self.apply_history(key, fetched)

    async def latest(self, key: ConversationKey) -> Optional[Message]:
        """Latest message of a conversation, read straight from persistence."""

        try:
            newest = await self._persistence.list_messages(key, limit=1, newest_first=True)
        except TransportError as exc:
            raise FetchError(f"could not load latest message for {key}: {exc}") from exc
        return newest[0] if newest else None

    def send(self, key: ConversationKey, text: str) -> Message:
        """Append an optimistic message now and write it in the background.

        Must be called from a running event loop. Returns the optimistic entry.
        """

        if not text or not text.strip():
            raise ValidationError("message text is empty")
        thread = self._thread(key)
        local = Message(
            id=f"{TEMP_ID_PREFIX}{next(self._temp_ids)}",
            sender_id=self.viewer_id,
            receiver_id=key.counterpart(self.viewer_id),
            text=text,
            created_at_ms=self._now(),
            client_key=f"ck_{secrets.token_urlsafe(12)}",
            delivery=DELIVERY_PENDING,
        )
        _insert_sorted(thread, local)
        self._schedule_write(key, local)
        self._changed(key)
        return local

    def retry(self, key: ConversationKey, local_id: str) -> Message:
        """Resend a failed optimistic entry with its original ``client_key``."""

        thread = self._thread(key)
        index = _position(thread, local_id)
        if index is None:
            raise NotFoundError(f"no message {local_id} in {key}")
        local = thread[index]
        if local.delivery != DELIVERY_FAILED:
            raise ValidationError(f"message {local_id} has not failed")
        local = replace(local, delivery=DELIVERY_PENDING)
        thread[index] = local
        self._schedule_write(key, local)
        self._changed(key)
        return local

    def _schedule_write(self, key: ConversationKey, local: Message) -> None:
        task = asyncio.get_running_loop().create_task(self._write(key, local))
        self._sends[local.id] = task
        task.add_done_callback(lambda done, local_id=local.id: self._forget_send(local_id, done))

    def _forget_send(self, local_id: str, task: asyncio.Task) -> None:
        # a retry started from the failure callback may already own this slot
        if self._sends.get(local_id) is task:
            del self._sends[local_id]

    async def _write(self, key: ConversationKey, local: Message) -> Optional[Message]:
        try:
            confirmed = await self._persistence.insert_message(
                local.sender_id, local.receiver_id, local.text, local.client_key
            )
        except (TransportError, WriteRejected) as exc:
            logger.warning("send of %s in %s failed: %s", local.id, key, exc)
            self._mark_failed(key, local.id)
            return None
        except asyncio.CancelledError:
            self._mark_failed(key, local.id)
            raise
        self._reconcile(key, local.id, confirmed)
        return confirmed

    def _mark_failed(self, key: ConversationKey, local_id: str) -> None:
        thread = self._threads.get(key, [])
        index = _position(thread, local_id)
        if index is None:
            return
        thread[index] = replace(thread[index], delivery=DELIVERY_FAILED)
        self._changed(key)

    def _reconcile(self, key: ConversationKey, local_id: str, confirmed: Message) -> None:
        thread = self._threads.setdefault(key, [])
        confirmed = replace(confirmed, delivery=DELIVERY_SENT)
        local_index = _position(thread, local_id)
        if _position(thread, confirmed.id) is not None:
            # The echo got here first.
            if local_index is not None:
                del thread[local_index]
                self._changed(key)
            return
        if local_index is None:
            _insert_sorted(thread, confirmed)
        else:
            _replace_at(thread, local_index, confirmed)
        self._changed(key)

    def ingest(self, key: ConversationKey, message: Message) -> bool:
        """Merge a push-delivered message; returns False when it was already known."""

        if message.key != key:
            raise ValidationError(f"message {message.id} does not belong to {key}")
        thread = self._thread(key)
        message = replace(message, delivery=DELIVERY_SENT)
        if _position(thread, message.id) is not None:
            return False
        index = self._match_optimistic(thread, message)
        if index is not None:
            _replace_at(thread, index, message)
        else:
            _insert_sorted(thread, message)
        self._changed(key)
        return True

    def _match_optimistic(self, thread: List[Message], message: Message) -> Optional[int]:
        if message.sender_id != self.viewer_id:
            return None
        if message.client_key:
            for index, candidate in enumerate(thread):
                if candidate.is_optimistic and candidate.client_key == message.client_key:
                    return index
            return None
        for index, candidate in enumerate(thread):
            if (
                candidate.is_optimistic
                and candidate.delivery == DELIVERY_PENDING
                and candidate.text == message.text
                and abs(candidate.created_at_ms - message.created_at_ms) <= self._echo_window_ms
            ):
                return index
        return None

    def unread_ids(self, key: ConversationKey) -> List[str]:
        counterpart = key.counterpart(self.viewer_id)
        return [
            message.id
            for message in self._threads.get(key, [])
            if message.sender_id == counterpart and message.read_at_ms is None and not message.is_optimistic
        ]

    def apply_read(self, key: ConversationKey, read_at_ms: int, message_ids: List[str] | None = None) -> List[str]:
        """Set ``read_at_ms`` on counterpart messages that lack it."""

        counterpart = key.counterpart(self.viewer_id)
        wanted = None if message_ids is None else set(message_ids)
        thread = self._threads.get(key, [])
        changed: List[str] = []
        for index, message in enumerate(thread):
            if message.sender_id != counterpart or message.read_at_ms is not None or message.is_optimistic:
                continue
            if wanted is not None and message.id not in wanted:
                continue
            thread[index] = replace(message, read_at_ms=read_at_ms)
            changed.append(message.id)
        if changed:
            self._changed(key)
        return changed

    def pending_sends(self) -> int:
        return sum(1 for task in self._sends.values() if not task.done())

    async def settle(self) -> None:
        """Wait until every in-flight send has completed."""

        while True:
            tasks = [task for task in self._sends.values() if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks)

    def forget(self, key: ConversationKey) -> None:
        self._threads.pop(key, None)
