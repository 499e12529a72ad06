import logging
from typing import List, Optional

from streamchat.errors import BackendWriteError, SendFailed, ValidationError
from streamchat.lifecycle import ChatEngine
from streamchat.metrics import record_send_outcome
from streamchat.policy import visible_messages
from streamchat.schemas import Identity, Message, MessageDraft

logger = logging.getLogger(__name__)


class ViewerChatEngine(ChatEngine):
    """
    Live chat feed for ordinary participants.

    Mirrors the most recent 100 records of the stream with soft-deleted
    messages removed. send() never echoes locally: a new message shows up
    with the next snapshot delivered by the backend.
    """

    default_window = 100

    def __init__(self, adapter, *, max_message_length: int = 4096, **kwargs):
        super().__init__(adapter, **kwargs)
        self.max_message_length = max_message_length

    def _apply_snapshot(self, messages: List[Message]) -> None:
        self._messages = visible_messages(messages)

    async def send(self, body: str, author: Optional[Identity]) -> str:
        """
        Post a message to the global stream.

        Args:
            body: Message text; surrounding whitespace is trimmed
            author: Identity of the sender

        Returns:
            The id assigned by the backend

        Raises:
            ValidationError: empty body or incomplete identity (nothing is written)
            SendFailed: the backend rejected the write
        """
        text = (body or "").strip()
        if not text:
            self._reject(ValidationError("Message body is empty"))
        if len(text) > self.max_message_length:
            self._reject(ValidationError(
                f"Message body exceeds {self.max_message_length} characters"
            ))
        author_id = author.id.strip() if author is not None else ""
        display_name = author.display_name.strip() if author is not None else ""
        if not author_id or not display_name:
            self._reject(ValidationError("Author id and display name are required"))

        draft = MessageDraft(
            author_id=author_id,
            display_name=display_name,
            avatar_url=author.avatar_url,
            body=text,
        )

        try:
            message_id = await self.adapter.append(self.stream_path, draft)
        except BackendWriteError as e:
            record_send_outcome("backend_error")
            failure = SendFailed("Failed to send message", cause=e)
            self._record_error(failure)
            raise failure from e

        record_send_outcome("sent")
        logger.info(
            "Chat message sent",
            extra={"message_id": message_id, "author_id": author_id},
        )
        return message_id

    def _reject(self, error: ValidationError) -> None:
        logger.warning(f"Send rejected: {error}")
        record_send_outcome("validation_error")
        self._record_error(error)
        raise error
