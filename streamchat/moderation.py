import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from streamchat.adapter import SERVER_TIMESTAMP
from streamchat.errors import BackendWriteError, MessageNotFound, Unauthorized
from streamchat.lifecycle import ChatEngine
from streamchat.metrics import record_moderation_outcome
from streamchat.policy import count_deleted, filter_view, order_messages
from streamchat.schemas import Identity, Message, ModerationStats

logger = logging.getLogger(__name__)


class SoftDeleteResult(str, Enum):
    DELETED = "deleted"
    # informational no-op: the first deletion's deletedAt/deletedBy are kept
    ALREADY_DELETED = "already_deleted"


class ModerationEngine(ChatEngine):
    """
    Unfiltered chat feed for moderators.

    Mirrors the most recent 200 records including soft-deleted ones so
    deletions can be audited. Searching and the "show deleted" toggle are
    local views over that window and never change the subscription.
    """

    default_window = 200

    def __init__(self, adapter, **kwargs):
        super().__init__(adapter, **kwargs)
        self._by_id: Dict[str, Message] = {}
        self._pending_deletes: Set[str] = set()

    def _apply_snapshot(self, messages: List[Message]) -> None:
        self._messages = order_messages(messages)
        self._by_id = {m.id: m for m in self._messages}
        # a delete stays pending until a snapshot shows it applied
        self._pending_deletes = {
            i for i in self._pending_deletes
            if i in self._by_id and not self._by_id[i].deleted
        }

    def disconnect(self) -> None:
        self._by_id = {}
        self._pending_deletes = set()
        super().disconnect()

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def total_count(self) -> int:
        return len(self._messages)

    @property
    def deleted_count(self) -> int:
        return count_deleted(self._messages)

    def stats(self) -> ModerationStats:
        deleted = self.deleted_count
        return ModerationStats(
            total_messages=self.total_count,
            deleted_messages=deleted,
            visible_messages=self.total_count - deleted,
            connected=self.is_connected,
        )

    def view(self, search: str = "", show_deleted: bool = False) -> List[Message]:
        return filter_view(self._messages, search=search, show_deleted=show_deleted)

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def soft_delete(self, message_id: str, moderator: Optional[Identity]) -> SoftDeleteResult:
        """
        Mark a message as deleted without removing it from the stream.

        Args:
            message_id: Key of the message to hide
            moderator: Identity performing the deletion; must be a moderator

        Returns:
            DELETED, or ALREADY_DELETED when the message is already deleted
            (or being deleted) in the local window

        Raises:
            Unauthorized: moderator is missing or not a moderator
            MessageNotFound: message_id is not in the current window
            BackendWriteError: the backend rejected the patch
        """
        if moderator is None or not moderator.is_moderator or not moderator.id:
            record_moderation_outcome("unauthorized")
            error = Unauthorized("Moderator privileges required")
            self._record_error(error)
            raise error

        message = self.get(message_id)
        if message_id in self._pending_deletes or (message is not None and message.deleted):
            record_moderation_outcome("already_deleted")
            logger.info("Message already deleted", extra={"message_id": message_id})
            return SoftDeleteResult.ALREADY_DELETED
        if message is None:
            record_moderation_outcome("not_found")
            error = MessageNotFound(message_id)
            self._record_error(error)
            raise error

        deleted_by = moderator.display_name.strip() or moderator.id
        self._pending_deletes.add(message_id)
        try:
            await self.adapter.patch(self.stream_path, message_id, {
                "deleted": True,
                "deletedAt": SERVER_TIMESTAMP,
                "deletedBy": deleted_by,
            })
        except BackendWriteError as e:
            self._pending_deletes.discard(message_id)
            record_moderation_outcome("backend_error")
            self._record_error(e)
            raise

        record_moderation_outcome("deleted")
        logger.info(
            "Message soft-deleted",
            extra={"message_id": message_id, "deleted_by": deleted_by},
        )
        return SoftDeleteResult.DELETED
