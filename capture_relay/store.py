import contextlib
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from loguru import logger

from capture_relay.models import SchedulerState, TrackedRequest

REQUEST_PREFIX = "request:"
SCHEDULER_STATE_KEY = "schedulerState"


class DuplicateRequestError(KeyError):
    pass


class DurableStore:
    """
    SQLite key-value store holding tracked requests and scheduler state.

    Layout is a single ``kv`` table:
    - ``request:<requestId>`` -> TrackedRequest as JSON
    - ``schedulerState`` -> {"next_wake_at": ...}

    Every write is committed before the call returns, so the state on disk
    is whatever the last completed call left behind. ``update_request`` runs
    its read and write inside one ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: Union[str, Path] = "capture_relay.sqlite3"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.logger = logger
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        with contextlib.suppress(sqlite3.DatabaseError):
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        self.logger.debug(f"Store ready at {self.db_path} with {self.count_requests()} tracked requests")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "DurableStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextlib.contextmanager
    def _transaction(self):
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _read(self, conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _request_key(request_id: str) -> str:
        return f"{REQUEST_PREFIX}{request_id}"

    # requests

    def get_request(self, request_id: str) -> Optional[TrackedRequest]:
        with self._lock:
            raw = self._read(self._conn, self._request_key(request_id))
        return TrackedRequest.model_validate_json(raw) if raw is not None else None

    def insert_request(self, request: TrackedRequest) -> None:
        """Stores a new record, refusing to overwrite an existing requestId"""
        key = self._request_key(request.request_id)
        with self._transaction() as conn:
            if self._read(conn, key) is not None:
                raise DuplicateRequestError(request.request_id)
            conn.execute("INSERT INTO kv(key, value) VALUES (?, ?)", (key, request.model_dump_json()))

    def put_request(self, request: TrackedRequest) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv(key, value) VALUES (?, ?)",
                (self._request_key(request.request_id), request.model_dump_json()),
            )

    def update_request(
        self,
        request_id: str,
        mutate: Callable[[TrackedRequest], Optional[TrackedRequest]],
    ) -> Optional[TrackedRequest]:
        """
        Atomic read-modify-write of one record.

        ``mutate`` receives the current record and returns the replacement,
        or None to leave it untouched. Returns whatever is stored afterwards,
        or None when the record does not exist.
        """
        key = self._request_key(request_id)
        with self._transaction() as conn:
            raw = self._read(conn, key)
            if raw is None:
                return None
            current = TrackedRequest.model_validate_json(raw)
            updated = mutate(current)
            if updated is None:
                return current
            conn.execute("UPDATE kv SET value = ? WHERE key = ?", (updated.model_dump_json(), key))
            return updated

    def delete_request(self, request_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM kv WHERE key = ?", (self._request_key(request_id),))
            return cur.rowcount == 1

    def list_requests(self) -> list[TrackedRequest]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT value FROM kv WHERE key LIKE ? ORDER BY key", (f"{REQUEST_PREFIX}%",)
            ).fetchall()
        requests = [TrackedRequest.model_validate_json(row[0]) for row in rows]
        return sorted(requests, key=lambda r: (r.created_at, r.request_id))

    def count_requests(self) -> int:
        with self._lock:
            (n,) = self._conn.execute(
                "SELECT COUNT(*) FROM kv WHERE key LIKE ?", (f"{REQUEST_PREFIX}%",)
            ).fetchone()
        return int(n)

    # scheduler state

    def get_scheduler_state(self) -> SchedulerState:
        with self._lock:
            raw = self._read(self._conn, SCHEDULER_STATE_KEY)
        return SchedulerState.model_validate_json(raw) if raw is not None else SchedulerState()

    def set_scheduler_state(self, state: SchedulerState) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv(key, value) VALUES (?, ?)",
                (SCHEDULER_STATE_KEY, state.model_dump_json()),
            )
