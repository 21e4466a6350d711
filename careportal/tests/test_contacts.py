import unittest

from careportal.appointments import AppointmentStore
from careportal.contacts import ContactDirectory, sort_contacts
from careportal.conversations import ConversationStore
from careportal.errors import FetchError
from careportal.models import Contact, Message, Profile

from .fakes import FakeClock, FlakyPersistence


class SortContactsTests(unittest.TestCase):
    def test_newest_first_then_silent_contacts_by_name(self):
        contacts = [
            Contact(id="c", name="Carol", role="doctor"),
            Contact(id="a", name="Alice", role="doctor", last_message="x", last_message_time_ms=10),
            Contact(id="b", name="Bob", role="doctor"),
            Contact(id="d", name="Dan", role="doctor", last_message="y", last_message_time_ms=20),
            Contact(id="e", name="Eve", role="doctor", last_message="z", last_message_time_ms=10),
        ]

        self.assertEqual([c.id for c in sort_contacts(contacts)], ["d", "a", "e", "b", "c"])


class ContactDirectoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.persistence = FlakyPersistence(self.clock)
        self.appointments = AppointmentStore(self.persistence, now_func=self.clock.now)
        self.conversations = ConversationStore(self.persistence, "P1", now_func=self.clock.now)
        self.directory = ContactDirectory(self.persistence, self.appointments, self.conversations)
        for profile in (
            Profile(id="P1", name="Pat", role="patient"),
            Profile(id="P2", name="Quinn", role="patient"),
            Profile(id="D1", name="Dr. Adams", role="doctor", specialty="Cardiology"),
            Profile(id="D2", name="Dr. Brown", role="doctor", specialty="Dermatology"),
            Profile(id="D3", name="Dr. Clark", role="doctor"),
        ):
            await self.persistence.upsert_profile(profile)

    async def _book(self, doctor_id: str, time: str = "10:00") -> None:
        await self.appointments.create(doctor_id, "P1", "2025-06-10", time)

    async def test_one_failed_preview_does_not_abort_the_listing(self):
        for index, doctor_id in enumerate(("D1", "D2", "D3")):
            await self._book(doctor_id, f"1{index}:00")
            self.clock.advance(1)
            await self.persistence.insert_message(doctor_id, "P1", f"hello from {doctor_id}")
        self.persistence.fail_latest_for = {"D2"}

        with self.assertLogs("careportal.contacts", level="WARNING"):
            contacts = await self.directory.build("P1", "patient")

        by_id = {contact.id: contact for contact in contacts}
        self.assertEqual(set(by_id), {"D1", "D2", "D3"})
        self.assertEqual(by_id["D1"].last_message, "hello from D1")
        self.assertEqual(by_id["D3"].last_message, "hello from D3")
        self.assertTrue(by_id["D1"].unread)
        self.assertIsNone(by_id["D2"].last_message)
        self.assertIsNone(by_id["D2"].last_message_time_ms)
        self.assertFalse(by_id["D2"].unread)
        self.assertEqual([failure.contact_id for failure in self.directory.failures], ["D2"])
        self.assertEqual(self.directory.failures[0].code, "partial_enrichment")
        self.assertEqual([c.id for c in contacts], ["D3", "D1", "D2"])

    async def test_counterparts_come_from_appointments(self):
        await self._book("D2")
        await self._book("D2", "11:00")

        contacts = await self.directory.build("P1", "patient")

        self.assertEqual([(c.id, c.name, c.specialty) for c in contacts], [("D2", "Dr. Brown", "Dermatology")])

    async def test_falls_back_to_role_directory(self):
        contacts = await self.directory.build("P1", "patient")

        self.assertEqual([c.id for c in contacts], ["D1", "D2", "D3"])
        self.assertTrue(all(c.role == "doctor" for c in contacts))

    async def test_doctor_sees_patients(self):
        await self.appointments.create("D1", "P2", "2025-06-10", "09:00")
        doctor_view = ContactDirectory(
            self.persistence,
            self.appointments,
            ConversationStore(self.persistence, "D1", now_func=self.clock.now),
        )

        contacts = await doctor_view.build("D1", "doctor")

        self.assertEqual([(c.id, c.role) for c in contacts], [("P2", "patient")])

    async def test_counterpart_without_profile_is_listed(self):
        await self.appointments.create("D9", "P1", "2025-06-10", "09:00")

        contacts = await self.directory.build("P1", "patient")

        self.assertEqual([(c.id, c.name, c.role) for c in contacts], [("D9", "Unknown", "doctor")])

    async def test_profile_failure_is_a_fetch_error(self):
        self.persistence.fail_profiles = True

        with self.assertRaises(FetchError):
            await self.directory.build("P1", "patient")

    async def test_unread_follows_latest_message_only(self):
        await self._book("D1")
        await self.persistence.insert_message("D1", "P1", "unread question")
        self.clock.advance(1)
        await self.persistence.insert_message("P1", "D1", "my reply")

        contacts = await self.directory.build("P1", "patient")

        self.assertEqual(contacts[0].last_message, "my reply")
        self.assertFalse(contacts[0].unread)

    async def test_apply_message_refreshes_preview_and_order(self):
        await self._book("D1")
        await self._book("D2", "11:00")
        await self.persistence.insert_message("D1", "P1", "first")
        await self.directory.build("P1", "patient")
        self.assertEqual([c.id for c in self.directory.contacts()], ["D1", "D2"])

        self.clock.advance(5)
        newer = Message(id="m-9", sender_id="D2", receiver_id="P1", text="new", created_at_ms=self.clock.now())
        updated = self.directory.apply_message(newer)

        self.assertEqual(updated.last_message, "new")
        self.assertTrue(updated.unread)
        self.assertEqual([c.id for c in self.directory.contacts()], ["D2", "D1"])

        older = Message(id="m-8", sender_id="D2", receiver_id="P1", text="old", created_at_ms=self.clock.now() - 60_000)
        self.directory.apply_message(older)
        self.assertEqual(self.directory.get("D2").last_message, "new")

    async def test_mark_read_clears_flag(self):
        await self._book("D1")
        await self.persistence.insert_message("D1", "P1", "hello")
        await self.directory.build("P1", "patient")

        self.assertFalse(self.directory.mark_read("D1").unread)
        self.assertIsNone(self.directory.mark_read("D7"))


if __name__ == "__main__":
    unittest.main()
