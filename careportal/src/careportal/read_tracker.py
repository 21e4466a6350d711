from __future__ import annotations

import logging
from typing import Callable

from .contacts import ContactDirectory
from .conversations import ConversationStore
from .errors import FetchError, TransportError
from .models import ConversationKey, _now_ms
from .persistence import Persistence

logger = logging.getLogger(__name__)


class ReadTracker:
    """Marks the counterpart's messages in a conversation as read, exactly once."""

    def __init__(
        self,
        persistence: Persistence,
        conversations: ConversationStore,
        directory: ContactDirectory | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._persistence = persistence
        self._conversations = conversations
        self._directory = directory
        self._now = now_func

    async def mark_read(self, key: ConversationKey) -> int:
        """Persist and mirror ``read_at`` for unread counterpart messages.

        Returns how many local messages changed. Own messages are never touched
        and an existing ``read_at`` is never overwritten.
        """

        viewer_id = self._conversations.viewer_id
        counterpart = key.counterpart(viewer_id)
        pending = self._conversations.unread_ids(key)
        if not pending:
            self._refresh_contact(key, counterpart)
            return 0

        read_at = self._now()
        try:
            updated = await self._persistence.mark_messages_read(counterpart, viewer_id, read_at)
        except TransportError as exc:
            raise FetchError(f"could not mark {key} as read: {exc}") from exc

        # A message pushed during the write is covered only if the server marked it too.
        changed = self._conversations.apply_read(key, read_at, list(set(pending) | set(updated)))
        self._refresh_contact(key, counterpart)
        if changed:
            logger.debug("marked %d message(s) read in %s", len(changed), key)
        return len(changed)

    def _refresh_contact(self, key: ConversationKey, counterpart: str) -> None:
        if self._directory is None:
            return
        latest = self._conversations.latest_local(key)
        if latest is None:
            self._directory.mark_read(counterpart)
        else:
            self._directory.apply_message(latest)
