import copy
import fcntl
import json
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

from .config import DEFAULT_CONFIG, Settings
from .errors import StoreError
from .utils import now_iso

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS snapshots (
    queue TEXT PRIMARY KEY,
    document TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def default_snapshot() -> Dict[str, Any]:
    return {"jobs": [], "dlq": [], "config": dict(DEFAULT_CONFIG)}


def _normalize(document: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(document, dict):
        raise StoreError(f"Queue snapshot must be a JSON object, got {type(document).__name__}")
    snapshot = default_snapshot()
    snapshot["jobs"] = list(document.get("jobs") or [])
    snapshot["dlq"] = list(document.get("dlq") or [])
    snapshot["config"] = dict(document.get("config") or DEFAULT_CONFIG)
    return snapshot


class SnapshotStore:
    """
    Durable home of one queue's full state: jobs, DLQ and configuration.

    `transaction()` is the only way to mutate: it holds an exclusive section
    that other threads *and* other processes respect for the whole
    load-modify-save cycle, and only saves if the block exits cleanly.
    """

    def load(self) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self, snapshot: Dict[str, Any]):
        with self.transaction() as current:
            current.clear()
            current.update(copy.deepcopy(snapshot))

    def transaction(self):
        raise NotImplementedError


# ---------- SQLite ----------
class SQLiteStore(SnapshotStore):
    def __init__(self, path, queue_name: str = "default", timeout: float = 30.0):
        self.path = Path(path)
        self.queue_name = queue_name
        self.timeout = timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        # autocommit mode; transactions are opened explicitly below
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _read(self, conn) -> Dict[str, Any]:
        row = conn.execute(
            "SELECT document FROM snapshots WHERE queue=?", (self.queue_name,)
        ).fetchone()
        if not row:
            return default_snapshot()
        try:
            return _normalize(json.loads(row["document"]))
        except ValueError as e:
            raise StoreError(f"Corrupt snapshot for queue '{self.queue_name}': {e}")

    def load(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            return self._read(conn)
        except sqlite3.Error as e:
            raise StoreError(f"DB error while loading queue: {e}")
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                snapshot = self._read(conn)
            except sqlite3.Error as e:
                raise StoreError(f"DB error while locking queue: {e}")
            try:
                yield snapshot
                conn.execute(
                    "INSERT INTO snapshots(queue, document, updated_at) VALUES(?,?,?) "
                    "ON CONFLICT(queue) DO UPDATE SET document=excluded.document, "
                    "updated_at=excluded.updated_at",
                    (self.queue_name, json.dumps(snapshot), now_iso()),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StoreError(f"DB error while saving queue: {e}")
        finally:
            conn.close()


# ---------- JSON file ----------
class JsonFileStore(SnapshotStore):
    def __init__(self, path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> Dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default_snapshot()
        try:
            return _normalize(json.loads(text))
        except ValueError as e:
            raise StoreError(f"Corrupt queue file {self.path}: {e}")

    def _write(self, snapshot: Dict[str, Any]):
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @contextmanager
    def _flock(self, mode: int):
        with open(self.lock_path, "a") as fh:
            fcntl.flock(fh.fileno(), mode)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def load(self) -> Dict[str, Any]:
        with self._flock(fcntl.LOCK_SH):
            return self._read()

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        with self._flock(fcntl.LOCK_EX):
            snapshot = self._read()
            yield snapshot
            try:
                self._write(snapshot)
            except OSError as e:
                raise StoreError(f"Could not write queue file {self.path}: {e}")


def open_store(settings: Settings) -> SnapshotStore:
    if settings.backend == "json":
        return JsonFileStore(settings.db_path)
    return SQLiteStore(settings.db_path, queue_name=settings.queue_name)
