"""Persistence collaborator interface and the in-memory implementation.

The coordination engine never talks to a storage engine directly: every store
receives an object with the coroutine methods of :class:`Persistence`. Three
implementations ship with the package: :class:`InMemoryPersistence` (tests and
the default dev server), ``sqlite_store.SQLitePersistence`` and
``remote.RemotePersistence``.

Implementations raise ``TransportError`` when the store cannot be reached,
``WriteRejected`` when it refuses a write and ``LookupError`` for unknown ids.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import WriteRejected
from .hub import DisconnectCallback, MessageCallback, Subscription, SubscriptionHub
from .models import (
    STATUS_CANCELLED,
    Appointment,
    ConversationKey,
    Message,
    Profile,
    _now_ms,
)


class PushChannel(Protocol):
    async def close(self) -> None: ...


class Persistence(Protocol):
    async def list_profiles(
        self, role: str | None = None, ids: Iterable[str] | None = None
    ) -> List[Profile]: ...

    async def upsert_profile(self, profile: Profile) -> Profile: ...

    async def insert_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        date: str,
        time: str,
        duration_minutes: int,
        status: str,
        notes: str | None,
    ) -> Appointment: ...

    async def get_appointment(self, appointment_id: str) -> Appointment: ...

    async def list_appointments(
        self, *, doctor_id: str | None = None, patient_id: str | None = None
    ) -> List[Appointment]: ...

    async def update_appointment_status(
        self, appointment_id: str, expected_status: str, new_status: str
    ) -> Appointment: ...

    async def insert_message(
        self, sender_id: str, receiver_id: str, text: str, client_key: str | None = None
    ) -> Message: ...

    async def list_messages(
        self, key: ConversationKey, *, limit: int | None = None, newest_first: bool = False
    ) -> List[Message]: ...

    async def mark_messages_read(self, sender_id: str, receiver_id: str, read_at_ms: int) -> List[str]: ...

    async def subscribe_messages(
        self,
        key: ConversationKey,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> PushChannel: ...

    async def close(self) -> None: ...


class HubChannel:
    """Push channel backed by a local :class:`SubscriptionHub`."""

    def __init__(self, hub: SubscriptionHub, subscription: Subscription) -> None:
        self._hub = hub
        self._subscription = subscription

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    async def close(self) -> None:
        self._hub.unsubscribe(self._subscription)


def order_messages(messages: Iterable[Message], *, newest_first: bool = False) -> List[Message]:
    return sorted(messages, key=lambda message: message.sort_key, reverse=newest_first)


class InMemoryPersistence:
    """Dict-backed store with server-assigned ids and ``client_key`` idempotency."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self.hub = SubscriptionHub()
        self._profiles: Dict[str, Profile] = {}
        self._appointments: Dict[str, Appointment] = {}
        self._messages: Dict[str, Message] = {}
        self._idempotency: Dict[Tuple[str, str], Message] = {}
        self._next_ids: Dict[str, int] = {}

    def _next_id(self, prefix: str) -> str:
        value = self._next_ids.get(prefix, 0) + 1
        self._next_ids[prefix] = value
        return f"{prefix}-{value}"

    async def list_profiles(self, role: str | None = None, ids: Iterable[str] | None = None) -> List[Profile]:
        wanted = None if ids is None else set(ids)
        profiles = [
            profile
            for profile in self._profiles.values()
            if (role is None or profile.role == role) and (wanted is None or profile.id in wanted)
        ]
        return sorted(profiles, key=lambda profile: (profile.name, profile.id))

    async def upsert_profile(self, profile: Profile) -> Profile:
        self._profiles[profile.id] = profile
        return profile

    async def insert_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        date: str,
        time: str,
        duration_minutes: int,
        status: str,
        notes: str | None,
    ) -> Appointment:
        for existing in self._appointments.values():
            if (
                existing.doctor_id == doctor_id
                and existing.date == date
                and existing.time == time
                and existing.status != STATUS_CANCELLED
            ):
                raise WriteRejected("slot already booked")
        appointment = Appointment(
            id=self._next_id("a"),
            doctor_id=doctor_id,
            patient_id=patient_id,
            date=date,
            time=time,
            duration_minutes=duration_minutes,
            status=status,
            notes=notes,
            created_at_ms=self._now(),
        )
        self._appointments[appointment.id] = appointment
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self._appointments.get(appointment_id)
        if appointment is None:
            raise LookupError(f"unknown appointment {appointment_id}")
        return appointment

    async def list_appointments(
        self, *, doctor_id: str | None = None, patient_id: str | None = None
    ) -> List[Appointment]:
        return [
            appointment
            for appointment in self._appointments.values()
            if (doctor_id is None or appointment.doctor_id == doctor_id)
            and (patient_id is None or appointment.patient_id == patient_id)
        ]

    async def update_appointment_status(
        self, appointment_id: str, expected_status: str, new_status: str
    ) -> Appointment:
        current = self._appointments.get(appointment_id)
        if current is None:
            raise LookupError(f"unknown appointment {appointment_id}")
        if current.status != expected_status:
            raise WriteRejected(f"appointment is {current.status}, expected {expected_status}")
        updated = replace(current, status=new_status)
        self._appointments[appointment_id] = updated
        return updated

    async def insert_message(
        self, sender_id: str, receiver_id: str, text: str, client_key: str | None = None
    ) -> Message:
        if client_key is not None:
            existing = self._idempotency.get((sender_id, client_key))
            if existing is not None:
                return self._messages[existing.id]
        message = Message(
            id=self._next_id("m"),
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            created_at_ms=self._now(),
            client_key=client_key,
        )
        self._messages[message.id] = message
        if client_key is not None:
            self._idempotency[(sender_id, client_key)] = message
        self.hub.broadcast(message)
        return message

    async def list_messages(
        self, key: ConversationKey, *, limit: int | None = None, newest_first: bool = False
    ) -> List[Message]:
        ordered = order_messages(
            (message for message in self._messages.values() if message.key == key),
            newest_first=newest_first,
        )
        if limit is not None:
            ordered = ordered[: max(limit, 0)]
        return ordered

    async def mark_messages_read(self, sender_id: str, receiver_id: str, read_at_ms: int) -> List[str]:
        updated: List[str] = []
        for message in list(self._messages.values()):
            if message.sender_id == sender_id and message.receiver_id == receiver_id and message.read_at_ms is None:
                self._messages[message.id] = replace(message, read_at_ms=read_at_ms)
                updated.append(message.id)
        return updated

    async def subscribe_messages(
        self,
        key: ConversationKey,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> HubChannel:
        subscription = self.hub.subscribe(key, on_message, on_disconnect)
        return HubChannel(self.hub, subscription)

    def disconnect_all(self, reason: str = "connection lost") -> int:
        return self.hub.disconnect_all(reason)

    def message(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    async def close(self) -> None:
        self.hub.clear()
