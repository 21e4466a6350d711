import unittest

from careportal.appointments import AppointmentStore
from careportal.contacts import ContactDirectory
from careportal.conversations import ConversationStore
from careportal.errors import FetchError
from careportal.models import ConversationKey, Profile
from careportal.read_tracker import ReadTracker

from .fakes import FakeClock, FlakyPersistence


class ReadTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.persistence = FlakyPersistence(self.clock)
        self.conversations = ConversationStore(self.persistence, "P1", now_func=self.clock.now)
        self.appointments = AppointmentStore(self.persistence, now_func=self.clock.now)
        self.directory = ContactDirectory(self.persistence, self.appointments, self.conversations)
        self.tracker = ReadTracker(self.persistence, self.conversations, self.directory, now_func=self.clock.now)
        self.key = ConversationKey.of("P1", "D1")
        await self.persistence.upsert_profile(Profile(id="D1", name="Dr. Adams", role="doctor"))
        await self.appointments.create("D1", "P1", "2025-06-10", "10:00")

    async def _load(self):
        await self.persistence.insert_message("D1", "P1", "question one")
        self.clock.advance(1)
        await self.persistence.insert_message("P1", "D1", "my answer")
        self.clock.advance(1)
        await self.persistence.insert_message("D1", "P1", "question two")
        self.clock.advance(1)
        await self.directory.build("P1", "patient")
        await self.conversations.history(self.key)

    async def test_marks_only_counterpart_messages(self):
        await self._load()
        self.assertTrue(self.directory.get("D1").unread)

        changed = await self.tracker.mark_read(self.key)

        self.assertEqual(changed, 2)
        by_text = {m.text: m for m in self.conversations.messages(self.key)}
        self.assertEqual(by_text["question one"].read_at_ms, self.clock.now())
        self.assertEqual(by_text["question two"].read_at_ms, self.clock.now())
        self.assertIsNone(by_text["my answer"].read_at_ms)
        stored = {m.text: m for m in await self.persistence.list_messages(self.key)}
        self.assertIsNone(stored["my answer"].read_at_ms)
        self.assertIsNotNone(stored["question two"].read_at_ms)
        self.assertFalse(self.directory.get("D1").unread)

    async def test_is_idempotent(self):
        await self._load()
        await self.tracker.mark_read(self.key)
        first = self.conversations.messages(self.key)
        self.clock.advance(30)

        self.assertEqual(await self.tracker.mark_read(self.key), 0)

        self.assertEqual(self.conversations.messages(self.key), first)
        self.assertEqual(self.persistence.mark_read_calls, 1)

    async def test_never_overwrites_read_at(self):
        await self._load()
        await self.tracker.mark_read(self.key)
        marked_at = self.clock.now()
        self.clock.advance(10)
        await self.persistence.insert_message("D1", "P1", "question three")
        await self.conversations.history(self.key)

        await self.tracker.mark_read(self.key)

        by_text = {m.text: m for m in self.conversations.messages(self.key)}
        self.assertEqual(by_text["question one"].read_at_ms, marked_at)
        self.assertEqual(by_text["question three"].read_at_ms, self.clock.now())

    async def test_failure_leaves_messages_unread(self):
        await self._load()
        self.persistence.fail_mark_read = True

        with self.assertRaises(FetchError):
            await self.tracker.mark_read(self.key)

        self.assertEqual(len(self.conversations.unread_ids(self.key)), 2)
        self.assertTrue(self.directory.get("D1").unread)

    async def test_without_directory(self):
        tracker = ReadTracker(self.persistence, self.conversations, now_func=self.clock.now)
        await self._load()

        self.assertEqual(await tracker.mark_read(self.key), 2)


if __name__ == "__main__":
    unittest.main()
