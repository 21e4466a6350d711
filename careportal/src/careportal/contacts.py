from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from .appointments import AppointmentStore
from .conversations import ConversationStore
from .errors import FetchError, PartialEnrichmentFailure, TransportError
from .models import Contact, ConversationKey, Message, Profile, opposite_role
from .persistence import Persistence

logger = logging.getLogger(__name__)


def sort_contacts(contacts: List[Contact]) -> List[Contact]:
    """Newest conversation first, silent contacts last, then by name."""

    by_name = sorted(contacts, key=lambda contact: (contact.name, contact.id))
    return sorted(
        by_name,
        key=lambda contact: (
            contact.last_message_time_ms is None,
            -(contact.last_message_time_ms or 0),
        ),
    )


def _preview(contact: Contact, message: Optional[Message]) -> Contact:
    if message is None:
        return replace(contact, last_message=None, last_message_time_ms=None, unread=False)
    return replace(
        contact,
        last_message=message.text,
        last_message_time_ms=message.created_at_ms,
        unread=message.sender_id == contact.id and message.read_at_ms is None,
    )


class ContactDirectory:
    """Derives and owns the conversation partner list of one actor."""

    def __init__(
        self,
        persistence: Persistence,
        appointments: AppointmentStore,
        conversations: ConversationStore,
    ) -> None:
        self._persistence = persistence
        self._appointments = appointments
        self._conversations = conversations
        self._actor_id: str | None = None
        self._contacts: Dict[str, Contact] = {}
        self._order: List[str] = []
        self.failures: List[PartialEnrichmentFailure] = []

    def contacts(self) -> List[Contact]:
        return [self._contacts[contact_id] for contact_id in self._order]

    def get(self, contact_id: str) -> Optional[Contact]:
        return self._contacts.get(contact_id)

    async def build(self, actor_id: str, role: str) -> List[Contact]:
        appointments = await self._appointments.list_for(actor_id, role)
        counterpart_ids: List[str] = []
        for appointment in appointments:
            other = appointment.counterpart(actor_id)
            if other not in counterpart_ids:
                counterpart_ids.append(other)

        try:
            if counterpart_ids:
                profiles = await self._persistence.list_profiles(ids=counterpart_ids)
            else:
                profiles = await self._persistence.list_profiles(role=opposite_role(role))
        except TransportError as exc:
            raise FetchError(f"could not load contacts for {actor_id}: {exc}") from exc

        known = {profile.id: profile for profile in profiles}
        if counterpart_ids:
            # A counterpart without a profile row still gets listed.
            fallback_role = opposite_role(role)
            ordered_profiles = [
                known.get(cid) or Profile(id=cid, name="Unknown", role=fallback_role) for cid in counterpart_ids
            ]
        else:
            ordered_profiles = [profile for profile in profiles if profile.id != actor_id]

        failures: List[PartialEnrichmentFailure] = []
        contacts: List[Contact] = []
        for profile in ordered_profiles:
            contact = Contact(id=profile.id, name=profile.name, role=profile.role, specialty=profile.specialty)
            try:
                latest = await self._conversations.latest(ConversationKey.of(actor_id, profile.id))
            except FetchError as exc:
                failure = PartialEnrichmentFailure(profile.id, exc)
                logger.warning("%s", failure)
                failures.append(failure)
                contacts.append(contact)
                continue
            contacts.append(_preview(contact, latest))

        self._actor_id = actor_id
        self._contacts = {contact.id: contact for contact in contacts}
        self._order = [contact.id for contact in sort_contacts(contacts)]
        self.failures = failures
        return self.contacts()

    def apply_message(self, message: Message) -> Optional[Contact]:
        """Refresh the preview of the contact that ``message`` was exchanged with."""

        if self._actor_id is None or not message.key.includes(self._actor_id):
            return None
        contact_id = message.key.counterpart(self._actor_id)
        contact = self._contacts.get(contact_id)
        if contact is None:
            return None
        current = contact.last_message_time_ms
        if current is not None and message.created_at_ms < current:
            return contact
        updated = _preview(contact, message)
        self._store(updated)
        return updated

    def mark_read(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        if contact is None or not contact.unread:
            return contact
        updated = replace(contact, unread=False)
        self._store(updated)
        return updated

    def _store(self, contact: Contact) -> None:
        self._contacts[contact.id] = contact
        self._order = [entry.id for entry in sort_contacts(list(self._contacts.values()))]
