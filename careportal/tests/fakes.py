from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Set

from careportal.errors import TransportError
from careportal.hub import SubscriptionHub
from careportal.models import ConversationKey, Message, Profile
from careportal.persistence import InMemoryPersistence

# 2023-11-14T22:13:20Z; appointment dates in tests are after this.
EPOCH_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = EPOCH_MS) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class DeferredHub(SubscriptionHub):
    """Hub that can hold broadcasts back until ``flush`` is called."""

    def __init__(self) -> None:
        super().__init__()
        self.deferred = False
        self.queued: List[Message] = []

    def broadcast(self, message: Message) -> None:
        if self.deferred:
            self.queued.append(message)
            return
        super().broadcast(message)

    def flush(self) -> None:
        queued, self.queued = self.queued, []
        for message in queued:
            super().broadcast(message)


class FlakyPersistence(InMemoryPersistence):
    """In-memory store with switchable faults and gates for ordering tests."""

    def __init__(self, clock: FakeClock, *, first_message_seq: int = 1) -> None:
        super().__init__(now_func=clock.now)
        self.hub = DeferredHub()
        self._next_ids["m"] = first_message_seq - 1
        self.fail_inserts = 0
        self.fail_subscribes = 0
        self.fail_profiles = False
        self.fail_history = False
        self.fail_mark_read = False
        self.fail_latest_for: Set[str] = set()
        self.insert_gate: asyncio.Event | None = None
        self.history_gates: Dict[ConversationKey, asyncio.Event] = {}
        self.subscribe_gate: asyncio.Event | None = None
        self.subscribers: List[tuple] = []
        self.subscribe_calls = 0
        self.mark_read_calls = 0

    async def list_profiles(self, role: str | None = None, ids: Iterable[str] | None = None) -> List[Profile]:
        if self.fail_profiles:
            raise TransportError("profiles unavailable")
        return await super().list_profiles(role=role, ids=ids)

    async def insert_message(
        self, sender_id: str, receiver_id: str, text: str, client_key: str | None = None
    ) -> Message:
        if self.insert_gate is not None:
            await self.insert_gate.wait()
        if self.fail_inserts > 0:
            self.fail_inserts -= 1
            raise TransportError("insert failed")
        return await super().insert_message(sender_id, receiver_id, text, client_key)

    async def list_messages(
        self, key: ConversationKey, *, limit: int | None = None, newest_first: bool = False
    ) -> List[Message]:
        if limit == 1 and newest_first:
            if self.fail_latest_for & {key.a, key.b}:
                raise TransportError(f"latest for {key} unavailable")
        else:
            gate = self.history_gates.get(key)
            if gate is not None:
                await gate.wait()
            if self.fail_history:
                raise TransportError("history unavailable")
        return await super().list_messages(key, limit=limit, newest_first=newest_first)

    async def mark_messages_read(self, sender_id: str, receiver_id: str, read_at_ms: int) -> List[str]:
        self.mark_read_calls += 1
        if self.fail_mark_read:
            raise TransportError("read mark failed")
        return await super().mark_messages_read(sender_id, receiver_id, read_at_ms)

    async def subscribe_messages(self, key, on_message, on_disconnect):
        self.subscribe_calls += 1
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if self.fail_subscribes > 0:
            self.fail_subscribes -= 1
            raise TransportError("push unavailable")
        self.subscribers.append((key, on_message, on_disconnect))
        return await super().subscribe_messages(key, on_message, on_disconnect)


async def instant_sleep(_: float) -> None:
    await asyncio.sleep(0)


async def wait_until(predicate, *, turns: int = 200) -> None:
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
