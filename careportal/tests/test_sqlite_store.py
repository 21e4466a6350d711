import os
import tempfile
import unittest

from careportal.conversations import ConversationStore
from careportal.errors import WriteRejected
from careportal.models import ConversationKey, Profile
from careportal.sqlite_backend import SQLiteBackend
from careportal.sqlite_store import SQLitePersistence

from .fakes import FakeClock


class SQLitePersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "nested", "careportal.db")
        self.clock = FakeClock()
        self.store = self._open()
        self.key = ConversationKey.of("P1", "D1")

    async def asyncTearDown(self):
        await self.store.close()
        self.tmpdir.cleanup()

    def _open(self) -> SQLitePersistence:
        return SQLitePersistence(SQLiteBackend(self.db_path), now_func=self.clock.now)

    async def test_records_survive_restart(self):
        await self.store.upsert_profile(Profile(id="D1", name="Dr. Adams", role="doctor", specialty="Cardiology"))
        appointment = await self.store.insert_appointment("D1", "P1", "2025-06-10", "10:00", 30, "pending", None)
        await self.store.update_appointment_status(appointment.id, "pending", "confirmed")
        first = await self.store.insert_message("D1", "P1", "hello", "ck_1")
        self.clock.advance(1)
        await self.store.mark_messages_read("D1", "P1", self.clock.now())

        await self.store.close()
        self.store = self._open()

        profiles = await self.store.list_profiles(ids=["D1"])
        self.assertEqual(profiles, [Profile(id="D1", name="Dr. Adams", role="doctor", specialty="Cardiology")])
        reloaded = await self.store.get_appointment(appointment.id)
        self.assertEqual(reloaded.status, "confirmed")
        self.assertEqual(reloaded.created_at_ms, appointment.created_at_ms)
        messages = await self.store.list_messages(self.key)
        self.assertEqual([(m.id, m.client_key, m.read_at_ms) for m in messages], [(first.id, "ck_1", self.clock.now())])

        second = await self.store.insert_message("P1", "D1", "thanks")
        self.assertEqual((first.id, second.id), ("m-1", "m-2"))

    async def test_client_key_makes_insert_idempotent(self):
        first = await self.store.insert_message("P1", "D1", "hello", "ck_same")
        self.clock.advance(1)
        again = await self.store.insert_message("P1", "D1", "hello", "ck_same")
        other_sender = await self.store.insert_message("D1", "P1", "hello", "ck_same")

        self.assertEqual(first, again)
        self.assertNotEqual(first.id, other_sender.id)
        self.assertEqual(len(await self.store.list_messages(self.key)), 2)

    async def test_double_booking_is_rejected(self):
        first = await self.store.insert_appointment("D1", "P1", "2025-06-10", "10:00", 30, "pending", None)

        with self.assertRaises(WriteRejected):
            await self.store.insert_appointment("D1", "P2", "2025-06-10", "10:00", 30, "pending", None)

        await self.store.update_appointment_status(first.id, "pending", "cancelled")
        rebooked = await self.store.insert_appointment("D1", "P2", "2025-06-10", "10:00", 30, "pending", "x")
        self.assertEqual(rebooked.notes, "x")

    async def test_status_update_is_compare_and_set(self):
        appointment = await self.store.insert_appointment("D1", "P1", "2025-06-10", "10:00", 30, "pending", None)

        with self.assertRaises(WriteRejected):
            await self.store.update_appointment_status(appointment.id, "confirmed", "completed")
        with self.assertRaises(LookupError):
            await self.store.update_appointment_status("a-99", "pending", "confirmed")

        listed = await self.store.list_appointments(patient_id="P1")
        self.assertEqual([a.status for a in listed], ["pending"])

    async def test_latest_and_limits(self):
        for text in ("a", "b", "c"):
            await self.store.insert_message("D1", "P1", text)
            self.clock.advance(1)
        await self.store.insert_message("D2", "P1", "elsewhere")

        newest = await self.store.list_messages(self.key, limit=1, newest_first=True)
        oldest_two = await self.store.list_messages(self.key, limit=2)

        self.assertEqual([m.text for m in newest], ["c"])
        self.assertEqual([m.text for m in oldest_two], ["a", "b"])

    async def test_profiles_filter_by_role(self):
        await self.store.upsert_profile(Profile(id="D1", name="Dr. Adams", role="doctor"))
        await self.store.upsert_profile(Profile(id="P1", name="Pat", role="patient"))
        await self.store.upsert_profile(Profile(id="D1", name="Dr. Adams-Li", role="doctor"))

        doctors = await self.store.list_profiles(role="doctor")

        self.assertEqual([(p.id, p.name) for p in doctors], [("D1", "Dr. Adams-Li")])
        self.assertEqual(await self.store.list_profiles(ids=[]), [])

    async def test_inserted_messages_are_pushed(self):
        received = []
        channel = await self.store.subscribe_messages(self.key, received.append, lambda exc: None)
        message = await self.store.insert_message("D1", "P1", "ping")
        await channel.close()
        await self.store.insert_message("D1", "P1", "after close")

        self.assertEqual(received, [message])

    async def test_conversation_store_on_sqlite(self):
        conversations = ConversationStore(self.store, "P1", now_func=self.clock.now)
        conversations.send(self.key, "Hello")
        await conversations.settle()

        self.assertEqual([(m.id, m.text) for m in conversations.messages(self.key)], [("m-1", "Hello")])
        self.assertEqual([m.text for m in await conversations.history(self.key)], ["Hello"])

    async def test_unsupported_schema_version(self):
        await self.store.close()
        backend = SQLiteBackend(self.db_path)
        backend.connection.execute("PRAGMA user_version = 99")
        backend.close()

        with self.assertRaises(ValueError):
            SQLiteBackend(self.db_path)
        self.store = self._open_reset()

    def _open_reset(self) -> SQLitePersistence:
        backend = SQLiteBackend(":memory:")
        return SQLitePersistence(backend, now_func=self.clock.now)


if __name__ == "__main__":
    unittest.main()
