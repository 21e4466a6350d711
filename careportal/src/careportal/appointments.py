from __future__ import annotations

import logging
from datetime import date as date_cls
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Tuple

from .errors import (
    ConflictError,
    FetchError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    TransportError,
    ValidationError,
    WriteRejected,
)
from .models import (
    ROLE_DOCTOR,
    ROLE_PATIENT,
    ROLES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    Appointment,
    _now_ms,
)
from .persistence import Persistence

logger = logging.getLogger(__name__)

BOTH_ROLES: FrozenSet[str] = frozenset({ROLE_DOCTOR, ROLE_PATIENT})

# (from, to) -> roles allowed to take the edge. Anything absent is not an edge.
TRANSITIONS: Dict[Tuple[str, str], FrozenSet[str]] = {
    (STATUS_PENDING, STATUS_CONFIRMED): frozenset({ROLE_DOCTOR}),
    (STATUS_PENDING, STATUS_CANCELLED): BOTH_ROLES,
    (STATUS_CONFIRMED, STATUS_COMPLETED): frozenset({ROLE_DOCTOR}),
    (STATUS_CONFIRMED, STATUS_CANCELLED): BOTH_ROLES,
}


def allowed_transitions(status: str, role: str) -> List[str]:
    """Statuses ``role`` may move an appointment to from ``status``."""

    return sorted(to for (frm, to), roles in TRANSITIONS.items() if frm == status and role in roles)


def check_transition(from_status: str, to_status: str, acting_role: str) -> None:
    roles = TRANSITIONS.get((from_status, to_status))
    if roles is None:
        raise InvalidTransitionError(from_status, to_status)
    if acting_role not in roles:
        raise ForbiddenError(f"{acting_role} may not move an appointment from {from_status} to {to_status}")


def _parse_slot(date: str | None, time: str | None) -> datetime:
    if not date or not time:
        raise ValidationError("date and time are required")
    try:
        day = date_cls.fromisoformat(date)
    except ValueError as exc:
        raise ValidationError(f"date must be YYYY-MM-DD, got {date!r}") from exc
    try:
        clock = datetime.strptime(time, "%H:%M").time()
    except ValueError as exc:
        raise ValidationError(f"time must be HH:MM, got {time!r}") from exc
    return datetime.combine(day, clock, tzinfo=timezone.utc)


class AppointmentStore:
    """Owns appointment records and the status state machine."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        now_func: Callable[[], int] = _now_ms,
        default_duration_minutes: int = 30,
    ) -> None:
        self._persistence = persistence
        self._now = now_func
        self._default_duration = default_duration_minutes

    async def create(
        self,
        doctor_id: str,
        patient_id: str,
        date: str | None,
        time: str | None,
        duration_minutes: int | None = None,
        notes: str | None = None,
        status: str = STATUS_PENDING,
    ) -> Appointment:
        if not doctor_id or not patient_id:
            raise ValidationError("doctor_id and patient_id are required")
        if doctor_id == patient_id:
            raise ValidationError("doctor and patient must differ")
        if status != STATUS_PENDING:
            raise ValidationError("new appointments must be pending")
        slot = _parse_slot(date, time)
        if slot.timestamp() * 1000 <= self._now():
            raise ValidationError("appointment must be in the future")
        duration = self._default_duration if duration_minutes is None else duration_minutes
        if duration <= 0:
            raise ValidationError("duration_minutes must be positive")

        try:
            appointment = await self._persistence.insert_appointment(
                doctor_id, patient_id, date, time, duration, status, notes or None
            )
        except WriteRejected as exc:
            raise ConflictError(str(exc)) from exc
        except TransportError as exc:
            raise FetchError(f"could not create appointment: {exc}") from exc
        logger.info("appointment %s created for %s with %s", appointment.id, patient_id, doctor_id)
        return appointment

    async def get(self, appointment_id: str) -> Appointment:
        try:
            return await self._persistence.get_appointment(appointment_id)
        except LookupError as exc:
            raise NotFoundError(f"unknown appointment {appointment_id}") from exc
        except TransportError as exc:
            raise FetchError(f"could not load appointment {appointment_id}: {exc}") from exc

    async def list_for(self, actor_id: str, role: str) -> List[Appointment]:
        if role not in ROLES:
            raise ValidationError(f"unknown role {role!r}")
        try:
            if role == ROLE_PATIENT:
                appointments = await self._persistence.list_appointments(patient_id=actor_id)
            else:
                appointments = await self._persistence.list_appointments(doctor_id=actor_id)
        except TransportError as exc:
            raise FetchError(f"could not list appointments: {exc}") from exc
        return sorted(appointments, key=lambda appointment: (appointment.date, appointment.time, appointment.id))

    async def update_status(
        self,
        appointment_id: str,
        new_status: str,
        acting_role: str,
        actor_id: str | None = None,
    ) -> Appointment:
        if acting_role not in ROLES:
            raise ForbiddenError(f"unknown role {acting_role!r}")
        current = await self.get(appointment_id)
        check_transition(current.status, new_status, acting_role)
        if actor_id is not None and actor_id not in current.party_ids():
            raise ForbiddenError(f"{actor_id} is not a party to appointment {appointment_id}")

        try:
            updated = await self._persistence.update_appointment_status(appointment_id, current.status, new_status)
        except WriteRejected as exc:
            raise ConflictError(str(exc)) from exc
        except LookupError as exc:
            raise NotFoundError(f"unknown appointment {appointment_id}") from exc
        except TransportError as exc:
            raise FetchError(f"could not update appointment {appointment_id}: {exc}") from exc
        logger.info("appointment %s moved %s -> %s by %s", appointment_id, current.status, new_status, acting_role)
        return updated
