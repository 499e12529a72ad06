import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from streamchat.utils import PushIdGenerator, now_ms

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Placeholder replaced by the store clock when a record is written
SERVER_TIMESTAMP = {".sv": "timestamp"}

Snapshot = List[Tuple[str, Dict[str, Any]]]


class RecordNotFound(LookupError):
    """Raised by update() when the target key does not exist."""

    def __init__(self, path: str, key: str):
        super().__init__(f"No record {key!r} under {path!r}")
        self.path = path
        self.key = key


@dataclass(eq=False)
class _Listener:
    path: str
    order_by: str
    limit_to_last: int
    on_value: Callable[[Snapshot], None]
    on_error: Optional[Callable[[Exception], None]] = None
    last: Optional[Snapshot] = field(default=None, repr=False)


def _make_engine(database_url: str, echo: bool = False):
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        # check_same_thread=False lets FastAPI's threadpool share the connection pool
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # in-memory databases only exist on a single connection
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, echo=echo, **kwargs)


class RealtimeStore:
    """
    Keyed, timestamp-ordered record store with live ordered listeners.

    Records live under a stream path and are addressed by push keys. Writers
    use push() and update(); readers register listeners that receive the
    full, most recent window of a path every time it changes.
    """

    def __init__(
        self,
        database_url: str,
        *,
        clock: Optional[Callable[[], int]] = None,
        echo: bool = False,
    ):
        self.database_url = database_url
        self._engine = _make_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        self._clock = clock or now_ms
        self._push_ids = PushIdGenerator()
        self._lock = threading.Lock()
        self._listeners: Dict[int, _Listener] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing realtime store with URL: {self.database_url}")
        try:
            # Import models to register them with Base.metadata
            from streamchat.models import Record  # noqa: F401

            Base.metadata.create_all(bind=self._engine)
            logger.info("Realtime store initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize realtime store: {e}")
            raise

    def drop_db(self) -> None:
        Base.metadata.drop_all(bind=self._engine)

    def dispose(self) -> None:
        """Drop all listeners and close pooled connections."""
        with self._lock:
            remaining = len(self._listeners)
            self._listeners.clear()
        if remaining:
            logger.warning(f"Disposing realtime store with {remaining} live listener(s)")
        self._engine.dispose()

    def ping(self) -> bool:
        """
        Check if the database is reachable and the records table exists.

        Returns:
            True if the store is healthy, False otherwise.
        """
        try:
            with self._session_factory() as db:
                db.execute(text("SELECT 1"))
            if not inspect(self._engine).has_table("records"):
                logger.error("Realtime store schema not applied: 'records' table not found")
                return False
            return True
        except SQLAlchemyError as e:
            logger.error(f"Realtime store health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _resolve(self, value: Dict[str, Any], now: int) -> Dict[str, Any]:
        return {k: (now if v == SERVER_TIMESTAMP else v) for k, v in value.items()}

    def push(self, path: str, value: Dict[str, Any]) -> str:
        """
        Create a new record under path with a freshly generated push key.

        Returns:
            The key of the new record.
        """
        from streamchat.models import Record

        now = self._clock()
        key = self._push_ids.generate(now)
        data = self._resolve(value, now)
        logger.debug(f"Pushing record {key} to {path}")

        with self._session_factory() as db:
            try:
                db.add(Record(
                    path=path,
                    key=key,
                    data=data,
                    created_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                ))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

        logger.info(f"Record created: path={path}, key={key}")
        self._notify(path)
        return key

    def update(self, path: str, key: str, fields: Dict[str, Any]) -> None:
        """
        Merge fields into an existing record. Untouched fields are kept.

        Raises:
            RecordNotFound: key does not exist under path
        """
        from streamchat.models import Record

        data = self._resolve(fields, self._clock())
        with self._session_factory() as db:
            try:
                record = db.get(Record, (path, key))
                if record is None:
                    raise RecordNotFound(path, key)
                # Reassign so the JSON column is flagged dirty
                record.data = {**record.data, **data}
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise

        logger.info(f"Record updated: path={path}, key={key}, fields={sorted(fields)}")
        self._notify(path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, path: str, key: str) -> Optional[Dict[str, Any]]:
        from streamchat.models import Record

        with self._session_factory() as db:
            record = db.get(Record, (path, key))
            return copy.deepcopy(record.data) if record is not None else None

    def query(self, path: str, order_by: str, limit_to_last: int) -> Snapshot:
        """
        Return the most recent limit_to_last records of path,
        ordered ascending by the order_by child, then key.
        """
        from streamchat.models import Record

        order_value = Record.data[order_by].as_float()
        stmt = (
            select(Record)
            .where(Record.path == path)
            .order_by(order_value.desc(), Record.key.desc())
            .limit(limit_to_last)
        )
        with self._session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [(row.key, copy.deepcopy(row.data)) for row in reversed(rows)]

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def listen(
        self,
        path: str,
        order_by: str,
        limit_to_last: int,
        on_value: Callable[[Snapshot], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        """
        Register a live listener on the ordered window of path.

        The current window is delivered immediately, then again after every
        write that changes it. Read failures are passed to on_error and the
        listener stays registered.

        Returns:
            A callable removing the listener; calling it again does nothing.
        """
        listener = _Listener(path, order_by, limit_to_last, on_value, on_error)
        token = id(listener)
        with self._lock:
            self._listeners[token] = listener
        logger.debug(f"Listener registered on {path} (order_by={order_by}, limit={limit_to_last})")

        def unsubscribe() -> None:
            with self._lock:
                removed = self._listeners.pop(token, None)
            if removed is not None:
                logger.debug(f"Listener removed from {path}")

        try:
            self._deliver(listener)
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def listener_count(self, path: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for l in self._listeners.values() if path is None or l.path == path)

    def _notify(self, path: str) -> None:
        with self._lock:
            listeners = [l for l in self._listeners.values() if l.path == path]
        for listener in listeners:
            try:
                self._deliver(listener)
            except Exception:
                # the write is already committed; one failing listener must not fail it
                logger.exception(f"Listener on {path} failed")

    def _deliver(self, listener: _Listener) -> None:
        try:
            snapshot = self.query(listener.path, listener.order_by, listener.limit_to_last)
        except SQLAlchemyError as e:
            logger.error(f"Listener query failed on {listener.path}: {e}")
            with self._lock:
                registered = id(listener) in self._listeners
            if registered and listener.on_error is not None:
                listener.on_error(e)
            return

        with self._lock:
            if id(listener) not in self._listeners:
                return
            if snapshot == listener.last:
                return
            listener.last = snapshot
        listener.on_value(copy.deepcopy(snapshot))
