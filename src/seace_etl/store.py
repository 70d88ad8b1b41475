"""Durable snapshots for operation and credential state (JSON or SQLite)."""

import json
import logging
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

Items = Dict[str, Dict[str, Any]]


class StateStore:
    """Namespaced persistence of whole in-memory maps.

    Callers hand over plain JSON-able dicts keyed by id. Each `save` carries a
    version number; a save older than the last one written for the same
    namespace is dropped, so writers can persist outside their own locks.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._lock = RLock()
        self._versions: Dict[str, int] = {}

    def save(self, namespace: str, items: Items, version: Optional[int] = None) -> bool:
        with self._lock:
            if version is not None:
                if version <= self._versions.get(namespace, -1):
                    return False
                self._versions[namespace] = version
            self._write(namespace, items)
            return True

    def load(self, namespace: str) -> Items:
        with self._lock:
            return self._read(namespace)

    def check(self) -> Dict[str, Any]:
        """Readiness probe payload."""
        return {"ok": True, "backend": self.backend}

    def _write(self, namespace: str, items: Items) -> None:
        pass

    def _read(self, namespace: str) -> Items:
        return {}


class MemoryStateStore(StateStore):
    """Keeps snapshots in process; used by tests and the CLI dry runs."""

    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, Items] = {}

    def _write(self, namespace: str, items: Items) -> None:
        self._data[namespace] = json.loads(json.dumps(items))

    def _read(self, namespace: str) -> Items:
        return json.loads(json.dumps(self._data.get(namespace, {})))


class JsonStateStore(StateStore):
    """One JSON document holding every namespace, replaced atomically."""

    backend = "json"

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)

    def _read_all(self) -> Dict[str, Items]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # Ignore corrupt store and continue with empty state.
            logger.warning("Ignoring unreadable state store at %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, namespace: str, items: Items) -> None:
        payload = self._read_all()
        payload[namespace] = items
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(f"{self.path.suffix}.tmp")
        temp_path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        temp_path.replace(self.path)

    def _read(self, namespace: str) -> Items:
        maybe_items = self._read_all().get(namespace, {})
        return maybe_items if isinstance(maybe_items, dict) else {}

    def check(self) -> Dict[str, Any]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return {"ok": False, "backend": self.backend, "error": str(e)}
        return {"ok": True, "backend": self.backend, "path": str(self.path)}


def _ensure_sqlite_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS state_store (
            namespace TEXT NOT NULL,
            item_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            PRIMARY KEY (namespace, item_id)
        )
        """
    )


class SqliteStateStore(StateStore):
    """Row-per-item storage; a save replaces the namespace in one transaction."""

    backend = "sqlite"

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)

    def _write(self, namespace: str, items: Items) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rows = [
            (namespace, item_id, json.dumps(payload, ensure_ascii=True))
            for item_id, payload in items.items()
        ]
        with sqlite3.connect(self.path) as conn:
            _ensure_sqlite_schema(conn)
            conn.execute("DELETE FROM state_store WHERE namespace = ?", (namespace,))
            conn.executemany(
                "INSERT INTO state_store (namespace, item_id, payload) VALUES (?, ?, ?)",
                rows,
            )

    def _read(self, namespace: str) -> Items:
        if not self.path.exists():
            return {}
        try:
            with sqlite3.connect(self.path) as conn:
                _ensure_sqlite_schema(conn)
                rows = conn.execute(
                    "SELECT item_id, payload FROM state_store WHERE namespace = ?",
                    (namespace,),
                ).fetchall()
        except sqlite3.Error:
            logger.warning("Ignoring unreadable state store at %s", self.path)
            return {}

        loaded: Items = {}
        for item_id, payload_raw in rows:
            try:
                payload = json.loads(payload_raw)
            except ValueError:
                continue
            if isinstance(payload, dict):
                loaded[item_id] = payload
        return loaded

    def check(self) -> Dict[str, Any]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with sqlite3.connect(self.path) as conn:
                _ensure_sqlite_schema(conn)
        except (OSError, sqlite3.Error) as e:
            return {"ok": False, "backend": self.backend, "error": str(e)}
        return {"ok": True, "backend": self.backend, "path": str(self.path)}


def build_state_store(backend: str, json_path: Path, sqlite_path: Path) -> StateStore:
    """Return the configured backend; unknown values fall back to JSON."""
    normalized = (backend or "").strip().lower()
    if normalized == "sqlite":
        return SqliteStateStore(sqlite_path)
    if normalized == "memory":
        return MemoryStateStore()
    return JsonStateStore(json_path)
