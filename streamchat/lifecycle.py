"""
Connection lifecycle shared by the viewer and moderation engines.

An engine owns at most one backend subscription at a time. The state
machine is:

    IDLE -> CONNECTING -> CONNECTED <-> ERROR
                 \\-> ERROR
    any state -> DISCONNECTED (terminal, explicit teardown only)

Every subscription is tagged with a generation number; deliveries from an
older generation (a subscription that has been released) are ignored, so a
leaked callback can never mutate engine state after teardown.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from streamchat.adapter import BackendStreamAdapter, Subscription
from streamchat.errors import BackendReadError, ChatError, EngineClosed
from streamchat.schemas import Message

logger = logging.getLogger(__name__)

ORDER_KEY = "sentAt"

ChangeListener = Callable[["ChatEngine"], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ChatEngine:
    """
    Base class for engines that mirror a window of the chat stream.

    Subclasses set `default_window` and implement `_apply_snapshot` to turn
    the decoded window into their local message list.
    """

    default_window = 100

    def __init__(
        self,
        adapter: BackendStreamAdapter,
        *,
        stream_path: str = "messages",
        window: Optional[int] = None,
        connect_timeout: float = 10.0,
    ):
        self.adapter = adapter
        self.stream_path = stream_path
        self.window = window or self.default_window
        self.connect_timeout = connect_timeout
        self.state = ConnectionState.IDLE
        self.error: Optional[ChatError] = None
        self._messages: List[Message] = []
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._ready: Optional[asyncio.Future] = None
        self._listeners: List[ChangeListener] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.stream_path} state={self.state.value}>"

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_connected(self) -> bool:
        """True once a snapshot has arrived since the last connect() and no error followed it."""
        return self.state is ConnectionState.CONNECTED

    @property
    def has_subscription(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Call listener(engine) after every state or message change. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionState:
        """
        Open the engine's subscription and wait for its first snapshot.

        No-op while CONNECTING or CONNECTED. From ERROR the previous
        subscription is released before a new one is opened.

        Raises:
            BackendReadError: the subscription failed or timed out
            EngineClosed: the engine has been disconnected
        """
        if self.state is ConnectionState.DISCONNECTED:
            raise EngineClosed(f"{type(self).__name__} has been disconnected")
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug(f"connect() ignored, engine already {self.state.value}")
            return self.state

        self._release()
        self._generation += 1
        generation = self._generation
        ready = asyncio.get_running_loop().create_future()
        self._ready = ready
        self.error = None
        self.state = ConnectionState.CONNECTING

        try:
            subscription = self.adapter.subscribe_ordered(
                self.stream_path,
                ORDER_KEY,
                self.window,
                lambda messages: self._on_snapshot(generation, messages),
                lambda exc: self._on_error(generation, exc),
            )
        except BackendReadError as e:
            self._on_error(generation, e)
            raise
        except Exception as e:
            failure = BackendReadError(f"Subscription to {self.stream_path} failed", cause=e)
            self._on_error(generation, failure)
            raise failure from e

        if generation != self._generation:
            # disconnect() ran while the first snapshot was being delivered
            subscription.unsubscribe()
            return self.state
        self._subscription = subscription

        try:
            failure = await asyncio.wait_for(asyncio.shield(ready), self.connect_timeout)
        except asyncio.TimeoutError:
            failure = BackendReadError(
                f"No snapshot from {self.stream_path} within {self.connect_timeout}s"
            )
            self._on_error(generation, failure)
        if failure is not None:
            raise failure
        return self.state

    def disconnect(self) -> None:
        """Release the subscription and enter the terminal DISCONNECTED state. Safe to repeat."""
        if self.state is ConnectionState.DISCONNECTED:
            return
        self._generation += 1
        self._release()
        self._messages = []
        self._resolve_ready(None)
        self.state = ConnectionState.DISCONNECTED
        logger.info(f"{type(self).__name__} disconnected from {self.stream_path}")
        self._emit()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.disconnect()

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _on_snapshot(self, generation: int, messages: List[Message]) -> None:
        if generation != self._generation:
            logger.debug("Ignoring snapshot from a released subscription")
            return
        self._apply_snapshot(messages)
        if isinstance(self.error, BackendReadError):
            self.error = None
        if self.state is not ConnectionState.CONNECTED:
            logger.info(f"{type(self).__name__} connected to {self.stream_path}")
        self.state = ConnectionState.CONNECTED
        self._resolve_ready(None)
        self._emit()

    def _on_error(self, generation: int, error: BackendReadError) -> None:
        if generation != self._generation:
            return
        logger.error(f"{type(self).__name__} subscription error: {error}")
        self.error = error
        self.state = ConnectionState.ERROR
        self._resolve_ready(error)
        self._emit()

    def _apply_snapshot(self, messages: List[Message]) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_error(self, error: ChatError) -> None:
        """Keep an operation error for passive display unless the engine is torn down."""
        if self.state is ConnectionState.DISCONNECTED:
            logger.debug(f"Discarding error after disconnect: {error}")
            return
        self.error = error
        self._emit()

    def _release(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    def _resolve_ready(self, failure: Optional[ChatError]) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(failure)

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                # a broken observer must not abort snapshot delivery
                logger.exception("Chat engine change listener failed")
