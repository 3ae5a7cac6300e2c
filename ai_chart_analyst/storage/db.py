"""
Database connection management.

A realtime-database-shaped JSON tree persisted in SQLite. Every leaf of the
tree is one row keyed by its slash-separated path, so a subtree read is a
range scan over the path prefix. Writes are serialized by a process lock and
``BEGIN IMMEDIATE`` transactions; listeners are notified after commit.
"""

import itertools
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "ai_chart_analyst.db"

_INVALID_KEY_CHARS = set(".#$[]")


class IndexNotReadyError(Exception):
    """Raised when a query orders by a child that has no index yet."""
    def __init__(self, path: str, child: str):
        self.path = path
        self.child = child
        super().__init__(f"Index not defined, add \".indexOn\": \"{child}\" for path \"{path}\"")


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    value: Any


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in manual-transaction mode.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection; callers issue BEGIN/COMMIT themselves
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def normalize_path(path: str) -> str:
    """Strip surrounding slashes and validate each path segment."""
    path = (path or "").strip("/")
    if not path:
        return ""
    segments = path.split("/")
    for segment in segments:
        if not segment:
            raise ValueError(f"Empty segment in path {path!r}")
        if _INVALID_KEY_CHARS & set(segment):
            raise ValueError(f"Invalid character in path segment {segment!r}")
    return "/".join(segments)


def join_path(*parts: str) -> str:
    return normalize_path("/".join(str(p).strip("/") for p in parts if p not in (None, "")))


def _is_related(a: str, b: str) -> bool:
    # Same node, ancestor, or descendant
    if not a or not b or a == b:
        return True
    return a.startswith(b + "/") or b.startswith(a + "/")


def _flatten(path: str, value: Any) -> Iterable[Tuple[str, Any]]:
    if isinstance(value, dict):
        for key, child in value.items():
            key = str(key)
            if not key or "/" in key or _INVALID_KEY_CHARS & set(key):
                raise ValueError(f"Invalid key {key!r} under {path!r}")
            yield from _flatten(f"{path}/{key}" if path else key, child)
    elif value is not None:
        if not path:
            raise ValueError("Cannot store a scalar at the root")
        yield path, value


class RealtimeDatabase:
    """JSON tree store with path reads/writes, queries, transactions and listeners.

    ``indexed_children`` mirrors a backend that only allows ``order_by_child``
    queries on declared indexes. ``None`` allows every child.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, indexed_children: Optional[Iterable[str]] = None):
        self.db_path = db_path
        self.indexed_children = set(indexed_children) if indexed_children is not None else None
        self._lock = threading.RLock()
        self._listeners: Dict[int, Tuple[str, Callable[[Any], None]]] = {}
        self._listener_ids = itertools.count(1)
        self._push_counter = itertools.count()
        self.initialize_schema()

    def initialize_schema(self) -> None:
        """Create the node table if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS node (
                    path TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
        finally:
            conn.close()

    # Low-level helpers, always called with an open connection

    def _read(self, conn: sqlite3.Connection, path: str) -> Any:
        if path:
            row = conn.execute("SELECT value FROM node WHERE path = ?", (path,)).fetchone()
            if row is not None:
                return json.loads(row[0])
            # '/' sorts right before '0', so this is exactly the subtree
            rows = conn.execute(
                "SELECT path, value FROM node WHERE path >= ? AND path < ? ORDER BY path",
                (path + "/", path + "0")
            ).fetchall()
            prefix_len = len(path) + 1
        else:
            rows = conn.execute("SELECT path, value FROM node ORDER BY path").fetchall()
            prefix_len = 0

        if not rows:
            return None
        tree: Dict[str, Any] = {}
        for leaf_path, raw in rows:
            node = tree
            segments = leaf_path[prefix_len:].split("/")
            for segment in segments[:-1]:
                node = node.setdefault(segment, {})
            node[segments[-1]] = json.loads(raw)
        return tree

    def _delete(self, conn: sqlite3.Connection, path: str) -> None:
        if not path:
            conn.execute("DELETE FROM node")
            return
        conn.execute(
            "DELETE FROM node WHERE path = ? OR (path >= ? AND path < ?)",
            (path, path + "/", path + "0")
        )
        # A leaf stored at an ancestor would shadow the new subtree
        segments = path.split("/")
        ancestors = ["/".join(segments[:i]) for i in range(1, len(segments))]
        if ancestors:
            conn.execute(
                f"DELETE FROM node WHERE path IN ({','.join('?' * len(ancestors))})",
                ancestors
            )

    def _write(self, conn: sqlite3.Connection, path: str, value: Any) -> None:
        self._delete(conn, path)
        conn.executemany(
            "INSERT INTO node (path, value) VALUES (?, ?)",
            [(leaf, json.dumps(leaf_value)) for leaf, leaf_value in _flatten(path, value)]
        )

    def _commit(self, changed: List[str], work: Callable[[sqlite3.Connection], Any]) -> Any:
        # ``work`` may append to ``changed``; listeners see the final list
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = work(conn)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
        self._notify(changed)
        return result

    # Public API

    def get(self, path: str = "") -> Any:
        """Read the value (scalar or subtree dict) at ``path``; None if absent."""
        path = normalize_path(path)
        conn = get_connection(self.db_path)
        try:
            return self._read(conn, path)
        finally:
            conn.close()

    def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path``. Setting None removes it."""
        path = normalize_path(path)
        self._commit([path], lambda conn: self._write(conn, path, value))

    def update(self, path: str, values: Dict[str, Any]) -> None:
        """Atomically set several children of ``path``.

        Keys may be nested relative paths such as ``"stats/total"``; other
        children of ``path`` are left untouched.
        """
        base = normalize_path(path)
        targets = [(join_path(base, key), value) for key, value in values.items()]

        def work(conn):
            for target, value in targets:
                self._write(conn, target, value)

        self._commit([target for target, _ in targets], work)

    def remove(self, path: str) -> None:
        self.set(path, None)

    def new_key(self) -> str:
        """Generate a chronologically sortable child key."""
        ms = int(time.time() * 1000)
        return f"{ms:013d}-{next(self._push_counter) % 1000000:06d}"

    def push(self, path: str, value: Any) -> str:
        """Append ``value`` under a new generated key and return the key."""
        key = self.new_key()
        self.set(join_path(path, key), value)
        return key

    def query(
        self,
        path: str,
        order_by_child: Optional[str] = None,
        equal_to: Any = None,
        limit_to_last: Optional[int] = None
    ) -> List[Tuple[str, Any]]:
        """Query the children of ``path``.

        Args:
            path: Parent path
            order_by_child: Child key to filter and sort on; key order if None
            equal_to: Keep only children whose ``order_by_child`` equals this
            limit_to_last: Keep only the last N children after ordering

        Returns:
            List of (key, value) pairs in ascending order

        Raises:
            IndexNotReadyError: If ``order_by_child`` is not an indexed child
        """
        path = normalize_path(path)
        if (order_by_child is not None and self.indexed_children is not None
                and order_by_child not in self.indexed_children):
            raise IndexNotReadyError(path, order_by_child)

        children = self.get(path)
        if not isinstance(children, dict):
            return []
        items = sorted(children.items())

        if order_by_child is not None:
            def child_value(item):
                return item[1].get(order_by_child) if isinstance(item[1], dict) else None

            if equal_to is not None:
                items = [item for item in items if child_value(item) == equal_to]
            # Missing values first, then numbers, then strings
            items.sort(key=lambda item: (
                child_value(item) is not None,
                isinstance(child_value(item), str),
                child_value(item) if child_value(item) is not None else 0
            ))

        if limit_to_last is not None:
            items = items[-limit_to_last:] if limit_to_last > 0 else []
        return items

    def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> TransactionResult:
        """Atomically read-modify-write the value at ``path``.

        ``update_fn`` receives the current value and returns the new one.
        Returning None aborts without writing.
        """
        path = normalize_path(path)
        outcome = {}

        def work(conn):
            current = self._read(conn, path)
            new_value = update_fn(current)
            if new_value is None:
                outcome["result"] = TransactionResult(False, current)
                return
            self._write(conn, path, new_value)
            outcome["result"] = TransactionResult(True, new_value)

        self._commit([path], work)
        return outcome["result"]

    def multi_transaction(
        self,
        path: str,
        children: Iterable[str],
        update_fn: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]
    ) -> TransactionResult:
        """Atomically read several children of ``path`` and write a set of children back.

        ``update_fn`` receives ``{child: current value}`` for the requested
        children and returns ``{child: new value}`` for every child to write;
        written children need not have been read. Returning None aborts
        without writing. Either every write lands or none does.
        """
        base = normalize_path(path)
        children = list(children)
        changed: List[str] = []
        outcome = {}

        def work(conn):
            current = {child: self._read(conn, join_path(base, child)) for child in children}
            updates = update_fn(current)
            if updates is None:
                outcome["result"] = TransactionResult(False, current)
                return
            for key, value in updates.items():
                target = join_path(base, key)
                self._write(conn, target, value)
                changed.append(target)
            outcome["result"] = TransactionResult(True, updates)

        self._commit(changed, work)
        return outcome["result"]

    def listen(self, path: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Call ``callback`` with the value at ``path`` now and after every change.

        Returns:
            A function that unsubscribes the listener
        """
        path = normalize_path(path)
        with self._lock:
            listener_id = next(self._listener_ids)
            self._listeners[listener_id] = (path, callback)
        self._fire(path, callback)

        def unsubscribe():
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    def _fire(self, path: str, callback: Callable[[Any], None]) -> None:
        try:
            callback(self.get(path))
        except Exception:
            logger.exception("Listener on %s failed", path or "/")

    def _notify(self, changed: List[str]) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        for path, callback in listeners:
            if any(_is_related(path, c) for c in changed):
                self._fire(path, callback)


# Process-wide database handle
_database: Optional[RealtimeDatabase] = None
_database_lock = threading.Lock()


def init_database(db_path: str = DEFAULT_DB_PATH, **kwargs) -> RealtimeDatabase:
    """Initialize the process-wide database once.

    Repeated calls return the existing handle instead of opening a second one.
    """
    global _database
    with _database_lock:
        if _database is None:
            _database = RealtimeDatabase(db_path, **kwargs)
            logger.debug("Initialized database at %s", db_path)
        elif _database.db_path != db_path:
            logger.warning(
                "Database already initialized at %s, ignoring %s", _database.db_path, db_path
            )
        return _database


def get_database() -> RealtimeDatabase:
    """Get the process-wide database, initializing it at the default path if needed."""
    if _database is None:
        return init_database()
    return _database
