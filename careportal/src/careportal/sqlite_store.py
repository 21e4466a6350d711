from __future__ import annotations

import sqlite3
from typing import Callable, Iterable, List

from .errors import WriteRejected
from .hub import DisconnectCallback, MessageCallback, SubscriptionHub
from .models import STATUS_CANCELLED, Appointment, ConversationKey, Message, Profile, _now_ms
from .persistence import HubChannel
from .sqlite_backend import SQLiteBackend

_APPOINTMENT_COLUMNS = "id, doctor_id, patient_id, date, time, duration_minutes, status, notes, created_at_ms"
_MESSAGE_COLUMNS = "id, sender_id, receiver_id, text, created_at_ms, read_at_ms, client_key"


def _appointment_from_row(row: sqlite3.Row) -> Appointment:
    return Appointment.from_dict(dict(row))


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message.from_dict(dict(row))


class SQLitePersistence:
    """Durable persistence backed by SQLite; pushes inserted messages through a local hub."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func
        self.hub = SubscriptionHub()

    def _next_id(self, cursor: sqlite3.Cursor, kind: str) -> str:
        cursor.execute("INSERT OR IGNORE INTO id_seq (kind, next_id) VALUES (?, 1)", (kind,))
        row = cursor.execute("SELECT next_id FROM id_seq WHERE kind=?", (kind,)).fetchone()
        cursor.execute("UPDATE id_seq SET next_id = next_id + 1 WHERE kind=?", (kind,))
        return f"{kind}-{int(row[0])}"

    async def list_profiles(self, role: str | None = None, ids: Iterable[str] | None = None) -> List[Profile]:
        query = "SELECT user_id, full_name, role, specialty FROM profiles"
        clauses: list[str] = []
        params: list[object] = []
        if role is not None:
            clauses.append("role=?")
            params.append(role)
        if ids is not None:
            wanted = list(ids)
            if not wanted:
                return []
            clauses.append(f"user_id IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY full_name ASC, user_id ASC"
        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [Profile(id=row[0], name=row[1], role=row[2], specialty=row[3]) for row in rows]

    async def upsert_profile(self, profile: Profile) -> Profile:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO profiles (user_id, full_name, role, specialty) VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET full_name=excluded.full_name, role=excluded.role,
                    specialty=excluded.specialty
                """,
                (profile.id, profile.name, profile.role, profile.specialty),
            )
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
        now_ms = self._now()
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                clash = cursor.execute(
                    "SELECT id FROM appointments WHERE doctor_id=? AND date=? AND time=? AND status != ?",
                    (doctor_id, date, time, STATUS_CANCELLED),
                ).fetchone()
                if clash:
                    conn.rollback()
                    raise WriteRejected("slot already booked")
                appointment_id = self._next_id(cursor, "a")
                cursor.execute(
                    f"INSERT INTO appointments ({_APPOINTMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (appointment_id, doctor_id, patient_id, date, time, duration_minutes, status, notes, now_ms),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return Appointment(
            id=appointment_id,
            doctor_id=doctor_id,
            patient_id=patient_id,
            date=date,
            time=time,
            duration_minutes=duration_minutes,
            status=status,
            notes=notes,
            created_at_ms=now_ms,
        )

    async def get_appointment(self, appointment_id: str) -> Appointment:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments WHERE id=?", (appointment_id,)
            ).fetchone()
        if row is None:
            raise LookupError(f"unknown appointment {appointment_id}")
        return _appointment_from_row(row)

    async def list_appointments(
        self, *, doctor_id: str | None = None, patient_id: str | None = None
    ) -> List[Appointment]:
        query = f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments"
        clauses: list[str] = []
        params: list[object] = []
        if doctor_id is not None:
            clauses.append("doctor_id=?")
            params.append(doctor_id)
        if patient_id is not None:
            clauses.append("patient_id=?")
            params.append(patient_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date ASC, time ASC"
        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_appointment_from_row(row) for row in rows]

    async def update_appointment_status(
        self, appointment_id: str, expected_status: str, new_status: str
    ) -> Appointment:
        with self._backend.lock:
            conn = self._backend.connection
            updated = conn.execute(
                "UPDATE appointments SET status=? WHERE id=? AND status=?",
                (new_status, appointment_id, expected_status),
            ).rowcount
        if updated == 0:
            current = await self.get_appointment(appointment_id)
            raise WriteRejected(f"appointment is {current.status}, expected {expected_status}")
        return await self.get_appointment(appointment_id)

    async def insert_message(
        self, sender_id: str, receiver_id: str, text: str, client_key: str | None = None
    ) -> Message:
        pair_key = str(ConversationKey.of(sender_id, receiver_id))
        now_ms = self._now()
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                if client_key is not None:
                    row = cursor.execute(
                        f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id=? AND client_key=?",
                        (sender_id, client_key),
                    ).fetchone()
                    if row:
                        conn.commit()
                        return _message_from_row(row)
                message_id = self._next_id(cursor, "m")
                cursor.execute(
                    """
                    INSERT INTO messages (id, sender_id, receiver_id, pair_key, text, created_at_ms, client_key)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (message_id, sender_id, receiver_id, pair_key, text, now_ms, client_key),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        message = Message(
            id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            created_at_ms=now_ms,
            client_key=client_key,
        )
        self.hub.broadcast(message)
        return message

    async def list_messages(
        self, key: ConversationKey, *, limit: int | None = None, newest_first: bool = False
    ) -> List[Message]:
        direction = "DESC" if newest_first else "ASC"
        query = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE pair_key=? "
            f"ORDER BY created_at_ms {direction}, id {direction}"
        )
        params: list[object] = [str(key)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))
        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_message_from_row(row) for row in rows]

    async def mark_messages_read(self, sender_id: str, receiver_id: str, read_at_ms: int) -> List[str]:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                ids = [
                    row[0]
                    for row in cursor.execute(
                        "SELECT id FROM messages WHERE sender_id=? AND receiver_id=? AND read_at_ms IS NULL",
                        (sender_id, receiver_id),
                    ).fetchall()
                ]
                cursor.execute(
                    "UPDATE messages SET read_at_ms=? WHERE sender_id=? AND receiver_id=? AND read_at_ms IS NULL",
                    (read_at_ms, sender_id, receiver_id),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return ids

    async def subscribe_messages(
        self,
        key: ConversationKey,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> HubChannel:
        return HubChannel(self.hub, self.hub.subscribe(key, on_message, on_disconnect))

    async def close(self) -> None:
        self.hub.clear()
        self._backend.close()
