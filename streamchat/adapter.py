"""
Backend stream adapter.

Translates engine-level operations into the realtime store's three
primitives (push, listen, update) and decodes every record read from the
store into a Message. Store failures are re-raised as BackendWriteError or
delivered as BackendReadError.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from streamchat.errors import BackendReadError, BackendWriteError
from streamchat.metrics import subscription_closed, subscription_opened
from streamchat.schemas import Message, MessageDraft
from streamchat.storage import SERVER_TIMESTAMP, RealtimeStore, RecordNotFound, Snapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Message]], None]
ErrorCallback = Callable[[BackendReadError], None]


def decode_snapshot(snapshot: Snapshot) -> List[Message]:
    """
    Parse raw (key, record) pairs into Messages.
    Malformed records are logged and skipped.
    """
    messages = []
    for key, data in snapshot:
        if not isinstance(data, dict):
            logger.warning(
                "Skipping malformed record",
                extra={"message_id": key, "errors": f"expected an object, got {type(data).__name__}"},
            )
            continue
        try:
            messages.append(Message.model_validate({**data, "id": key}))
        except PydanticValidationError as e:
            logger.warning(
                "Skipping malformed record",
                extra={"message_id": key, "errors": e.error_count()},
            )
        except (TypeError, ValueError) as e:
            logger.warning(
                "Skipping malformed record",
                extra={"message_id": key, "errors": str(e)},
            )
    return messages


class Subscription:
    """
    Handle for one live subscription.

    unsubscribe() releases the backend listener the first time it is called;
    later calls do nothing.
    """

    def __init__(self, stream_path: str, dispose: Callable[[], None]):
        self.stream_path = stream_path
        self._dispose: Optional[Callable[[], None]] = dispose
        subscription_opened()

    @property
    def active(self) -> bool:
        return self._dispose is not None

    def unsubscribe(self) -> None:
        dispose, self._dispose = self._dispose, None
        if dispose is None:
            return
        dispose()
        subscription_closed()
        logger.debug(f"Unsubscribed from {self.stream_path}")


class BackendStreamAdapter:
    """Engine-facing wrapper around a RealtimeStore."""

    def __init__(self, store: RealtimeStore):
        self.store = store

    async def append(self, stream_path: str, draft: MessageDraft) -> str:
        """
        Create a new message record.

        Returns:
            The backend-assigned message id

        Raises:
            BackendWriteError: the store rejected the write
        """
        record: Dict[str, Any] = draft.model_dump(by_alias=True, exclude_none=True)
        record["sentAt"] = SERVER_TIMESTAMP
        record["deleted"] = False
        try:
            return self.store.push(stream_path, record)
        except SQLAlchemyError as e:
            logger.error(f"Append to {stream_path} failed: {e}")
            raise BackendWriteError("Failed to store message", cause=e) from e

    def subscribe_ordered(
        self,
        stream_path: str,
        order_key: str,
        limit: int,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """
        Open a live subscription on the most recent `limit` records ordered by `order_key`.

        on_snapshot receives the full decoded window on every change and must
        treat it as a replacement of everything it knew. Read failures go to
        on_error; the subscription stays open until unsubscribe() is called.
        """
        def handle_value(snapshot: Snapshot) -> None:
            on_snapshot(decode_snapshot(snapshot))

        def handle_error(exc: Exception) -> None:
            if on_error is not None:
                on_error(BackendReadError(f"Subscription to {stream_path} failed", cause=exc))

        logger.info(f"Subscribing to {stream_path} (order_key={order_key}, limit={limit})")
        try:
            dispose = self.store.listen(stream_path, order_key, limit, handle_value, handle_error)
        except SQLAlchemyError as e:
            raise BackendReadError(f"Subscription to {stream_path} failed", cause=e) from e
        return Subscription(stream_path, dispose)

    async def patch(self, stream_path: str, message_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge fields into an existing message record.

        Raises:
            BackendWriteError: the record does not exist or the store rejected the write
        """
        try:
            self.store.update(stream_path, message_id, fields)
        except RecordNotFound as e:
            logger.error(f"Patch target missing: {stream_path}/{message_id}")
            raise BackendWriteError(f"Message {message_id!r} does not exist", cause=e) from e
        except SQLAlchemyError as e:
            logger.error(f"Patch of {stream_path}/{message_id} failed: {e}")
            raise BackendWriteError("Failed to update message", cause=e) from e
