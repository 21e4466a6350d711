from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

ROLE_PATIENT = "patient"
ROLE_DOCTOR = "doctor"
ROLES = frozenset({ROLE_PATIENT, ROLE_DOCTOR})

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"
STATUS_COMPLETED = "completed"
STATUSES = frozenset({STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED})
TERMINAL_STATUSES = frozenset({STATUS_CANCELLED, STATUS_COMPLETED})

DELIVERY_PENDING = "pending"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"

TEMP_ID_PREFIX = "tmp-"


def _now_ms() -> int:
    return int(time.time() * 1000)


def opposite_role(role: str) -> str:
    if role == ROLE_PATIENT:
        return ROLE_DOCTOR
    if role == ROLE_DOCTOR:
        return ROLE_PATIENT
    raise ValueError(f"unknown role: {role}")


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    role: str
    specialty: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or "Unknown"),
            role=str(data["role"]),
            specialty=data.get("specialty"),
        )


@dataclass(frozen=True)
class ConversationKey:
    """Unordered pair of actor ids; ``a`` always sorts before ``b``."""

    a: str
    b: str

    @classmethod
    def of(cls, first: str, second: str) -> "ConversationKey":
        if first == second:
            raise ValueError("a conversation needs two distinct actors")
        low, high = sorted((first, second))
        return cls(a=low, b=high)

    def counterpart(self, viewer_id: str) -> str:
        if viewer_id == self.a:
            return self.b
        if viewer_id == self.b:
            return self.a
        raise ValueError(f"{viewer_id} is not part of this conversation")

    def includes(self, actor_id: str) -> bool:
        return actor_id in (self.a, self.b)

    def __str__(self) -> str:
        return f"{self.a}:{self.b}"


@dataclass(frozen=True)
class Appointment:
    id: str
    doctor_id: str
    patient_id: str
    date: str
    time: str
    duration_minutes: int
    status: str
    notes: Optional[str]
    created_at_ms: int

    def party_ids(self) -> tuple[str, str]:
        return self.doctor_id, self.patient_id

    def counterpart(self, actor_id: str) -> str:
        if actor_id == self.doctor_id:
            return self.patient_id
        return self.doctor_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Appointment":
        status = str(data["status"]).lower()
        if status not in STATUSES:
            raise ValueError(f"unknown appointment status: {data['status']}")
        return cls(
            id=str(data["id"]),
            doctor_id=str(data["doctor_id"]),
            patient_id=str(data["patient_id"]),
            date=str(data["date"]),
            time=str(data["time"]),
            duration_minutes=int(data["duration_minutes"]),
            status=status,
            notes=data.get("notes"),
            created_at_ms=int(data["created_at_ms"]),
        )


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at_ms: int
    read_at_ms: Optional[int] = None
    client_key: Optional[str] = None
    delivery: str = DELIVERY_SENT

    @property
    def key(self) -> ConversationKey:
        return ConversationKey.of(self.sender_id, self.receiver_id)

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def sort_key(self) -> tuple[int, str]:
        return self.created_at_ms, self.id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("delivery")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        read_at = data.get("read_at_ms")
        return cls(
            id=str(data["id"]),
            sender_id=str(data["sender_id"]),
            receiver_id=str(data["receiver_id"]),
            text=str(data["text"]),
            created_at_ms=int(data["created_at_ms"]),
            read_at_ms=None if read_at is None else int(read_at),
            client_key=data.get("client_key"),
        )


@dataclass(frozen=True)
class Contact:
    id: str
    name: str
    role: str
    specialty: Optional[str] = None
    last_message: Optional[str] = None
    last_message_time_ms: Optional[int] = None
    unread: bool = False
