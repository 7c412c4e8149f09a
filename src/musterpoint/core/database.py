"""
Document Store for MusterPoint

SQLite-backed document storage with connection pooling, migrations,
single-document compare-and-set transactions and change-stream
subscriptions. Documents are JSON objects addressed by (collection, id).
"""

import asyncio
import copy
import inspect
import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .logging import get_logger
from .timestamps import to_iso, utcnow


@dataclass
class Migration:
    """Database migration definition"""
    version: int
    name: str
    sql: str
    rollback_sql: Optional[str] = None


class DatabaseError(Exception):
    """Database-related errors"""
    pass


class TransientStoreError(DatabaseError):
    """Store temporarily unavailable (busy, locked or I/O failure)"""
    pass


class DocumentNotFoundError(DatabaseError):
    """Update targeted a document that does not exist"""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Document {collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class _Sentinel:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return self.name


# Field-update sentinels
DELETE_FIELD = _Sentinel('DELETE_FIELD')
SERVER_TIMESTAMP = _Sentinel('SERVER_TIMESTAMP')


class ArrayAppend:
    """Field-update value appending items to a list field"""

    def __init__(self, *values: Any):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayAppend({self.values!r})"


def _resolve_value(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return to_iso(now)
    if isinstance(value, dict):
        return {k: _resolve_value(v, now) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve_value(v, now) for v in value]
    return value


def get_path(data: Optional[Dict[str, Any]], path: str) -> Any:
    """Read a dotted path from a document body, None when absent."""
    current: Any = data
    for key in path.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def apply_field_updates(data: Dict[str, Any], fields: Dict[str, Any], now: datetime) -> None:
    """Apply dotted-path field updates to a document body in place."""
    for path, value in fields.items():
        keys = path.split('.')
        target: Optional[Dict[str, Any]] = data
        for key in keys[:-1]:
            child = target.get(key)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    target = None
                    break
                child = {}
                target[key] = child
            target = child
        if target is None:
            continue

        leaf = keys[-1]
        if value is DELETE_FIELD:
            target.pop(leaf, None)
        elif isinstance(value, ArrayAppend):
            existing = target.get(leaf)
            items = list(existing) if isinstance(existing, list) else []
            items.extend(_resolve_value(v, now) for v in value.values)
            target[leaf] = items
        else:
            target[leaf] = _resolve_value(value, now)


class ConnectionPool:
    """Simple SQLite connection pool"""

    def __init__(self, database_path: str, max_connections: int = 10,
                 acquire_timeout: float = 30.0):
        self.database_path = database_path
        self.max_connections = max_connections
        self.acquire_timeout = acquire_timeout
        self.connections: List[sqlite3.Connection] = []
        self.in_use: Set[sqlite3.Connection] = set()
        self.condition = threading.Condition()
        self.logger = get_logger('database')

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection from the pool, waiting while all are in use"""
        deadline = time.monotonic() + self.acquire_timeout
        with self.condition:
            while True:
                for conn in self.connections:
                    if conn not in self.in_use:
                        self.in_use.add(conn)
                        return conn

                if len(self.connections) < self.max_connections:
                    conn = sqlite3.connect(
                        self.database_path,
                        check_same_thread=False,
                        timeout=30.0,
                        isolation_level=None
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA journal_mode = WAL")
                    conn.execute("PRAGMA synchronous = NORMAL")
                    self.connections.append(conn)
                    self.in_use.add(conn)
                    return conn

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransientStoreError("Connection pool exhausted")
                self.condition.wait(remaining)

    def return_connection(self, conn: sqlite3.Connection):
        """Return a connection to the pool"""
        with self.condition:
            if conn in self.in_use:
                self.in_use.remove(conn)
                self.condition.notify()

    def close_all(self):
        """Close all connections in the pool"""
        with self.condition:
            for conn in self.connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    self.logger.warning(f"Error closing connection: {e}")
            self.connections.clear()
            self.in_use.clear()


class DatabaseManager:
    """
    Manages the SQLite file, migrations and connection pooling
    """

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.pool = ConnectionPool(str(self.database_path), max_connections)
        self.logger = get_logger('database')
        self.migrations = self._get_migrations()

        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = self.pool.get_connection()
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientStoreError(str(e)) from e
        except sqlite3.Error as e:
            raise DatabaseError(str(e)) from e
        finally:
            self.pool.return_connection(conn)

    @contextmanager
    def transaction(self):
        """Write transaction; BEGIN IMMEDIATE serialises concurrent writers"""
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _initialize_database(self):
        """Initialize database with schema and migrations"""
        self.logger.info(f"Initializing database at {self.database_path}")

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

        self._run_migrations()

    def _get_migrations(self) -> List[Migration]:
        """Get all database migrations"""
        return [
            Migration(
                version=1,
                name="initial_schema",
                sql="""
                CREATE TABLE documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL, -- JSON object
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                );

                CREATE INDEX idx_documents_collection ON documents (collection);
                """
            ),
            Migration(
                version=2,
                name="index_document_updates",
                sql="""
                CREATE INDEX idx_documents_updated ON documents (collection, updated_at);
                """,
                rollback_sql="DROP INDEX idx_documents_updated;"
            ),
        ]

    def _run_migrations(self):
        """Run pending database migrations"""
        with self.get_connection() as conn:
            result = conn.execute("SELECT MAX(version) FROM migrations").fetchone()
            current_version = result[0] if result[0] is not None else 0

            for migration in self.migrations:
                if migration.version <= current_version:
                    continue
                self.logger.info(f"Running migration {migration.version}: {migration.name}")
                try:
                    conn.executescript(migration.sql)
                    conn.execute(
                        "INSERT INTO migrations (version, name) VALUES (?, ?)",
                        (migration.version, migration.name)
                    )
                    self.logger.info(f"Migration {migration.version} completed successfully")
                except sqlite3.Error as e:
                    self.logger.error(f"Migration {migration.version} failed: {e}")
                    raise DatabaseError(f"Migration failed: {e}") from e

    def execute_query(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results"""
        with self.get_connection() as conn:
            return conn.execute(query, params).fetchall()

    def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return affected rows"""
        with self.transaction() as conn:
            return conn.execute(query, params).rowcount

    def get_stats(self) -> Dict[str, Any]:
        """Document counts per collection"""
        rows = self.execute_query(
            "SELECT collection, COUNT(*) AS count FROM documents GROUP BY collection"
        )
        return {
            'database_path': str(self.database_path),
            'collections': {row['collection']: row['count'] for row in rows},
        }

    def close(self):
        """Close all database connections"""
        self.pool.close_all()
        self.logger.info("Database connections closed")


@dataclass
class DocumentSnapshot:
    """Committed state of one document; data is None when it does not exist"""
    collection: str
    id: str
    data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, path: str, default: Any = None) -> Any:
        value = get_path(self.data, path)
        return default if value is None else value


class DocumentTransaction:
    """
    Read-modify-write view of a single document inside a CAS transaction.

    The callable passed to DocumentStore.run_transaction reads ``data`` and
    stages at most one write through ``set``, ``update`` or ``delete``. The
    staged write commits atomically with the read; raising aborts it.
    """

    def __init__(self, collection: str, doc_id: str,
                 data: Optional[Dict[str, Any]], now: datetime):
        self.collection = collection
        self.doc_id = doc_id
        self.data = copy.deepcopy(data) if data is not None else None
        self.now = now
        self.existed = data is not None
        self.dirty = False

    @property
    def exists(self) -> bool:
        return self.data is not None

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        resolved = _resolve_value(data, self.now)
        if merge and self.data is not None:
            self.data = _merge(self.data, resolved)
        else:
            self.data = resolved
        self.dirty = True

    def update(self, fields: Dict[str, Any]) -> None:
        if self.data is None:
            raise DocumentNotFoundError(self.collection, self.doc_id)
        apply_field_updates(self.data, fields, self.now)
        self.dirty = True

    def delete(self) -> None:
        self.data = None
        self.dirty = True


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        elif value is DELETE_FIELD:
            result.pop(key, None)
        else:
            result[key] = value
    return result


Filters = Dict[str, Any]
Predicate = Callable[[Dict[str, Any]], bool]
Listener = Callable[[Any], Union[None, Awaitable[None]]]


def _matches(data: Dict[str, Any], filters: Optional[Filters],
             predicate: Optional[Predicate]) -> bool:
    for path, expected in (filters or {}).items():
        actual = get_path(data, path)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in list(expected):
                return False
        elif actual != expected:
            return False
    return predicate is None or predicate(data)


class Subscription:
    """
    Change-stream registration. Each trigger re-reads the watched state and
    hands it to the listener; triggers arriving during a delivery coalesce so
    the listener always ends on the latest committed state.
    """

    def __init__(self, store: 'DocumentStore', key: Tuple[str, ...],
                 fetch: Callable[[], Awaitable[Any]], listener: Listener):
        self.store = store
        self.key = key
        self._fetch = fetch
        self._listener = listener
        self._pending = False
        self._task: Optional[asyncio.Task] = None
        self.active = True

    def trigger(self) -> None:
        if not self.active:
            return
        self._pending = True
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._run())
            self.store._track(self._task)

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        while self._pending and self.active:
            self._pending = False
            try:
                state = await self._fetch()
            except DatabaseError as e:
                self.store.logger.error(f"Change stream {self.key} fetch failed: {e}")
                return
            if not self.active:
                return
            try:
                result = self._listener(state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.store.logger.error(f"Change stream listener {self.key} failed: {e}", exc_info=True)

    def cancel(self) -> None:
        """Stop delivering changes"""
        if not self.active:
            return
        self.active = False
        self.store._unregister(self)


class DocumentStore:
    """
    Async document API over DatabaseManager.

    Blocking SQLite work runs in worker threads so every call is a real
    suspension point. Writes notify change-stream subscribers after commit.
    """

    def __init__(self, db: DatabaseManager, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.logger = get_logger('document_store')
        self._subscriptions: Dict[Tuple[str, ...], List[Subscription]] = {}
        self._listener_tasks: Set[asyncio.Task] = set()

    # -- sync helpers, always run inside a worker thread ---------------

    @staticmethod
    def _read(conn: sqlite3.Connection, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id)
        ).fetchone()
        return json.loads(row['data']) if row else None

    @staticmethod
    def _write(conn: sqlite3.Connection, collection: str, doc_id: str,
               data: Dict[str, Any], now: datetime) -> None:
        stamp = to_iso(now)
        conn.execute(
            """
            INSERT INTO documents (collection, doc_id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (collection, doc_id)
            DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (collection, doc_id, json.dumps(data), stamp, stamp)
        )

    def _get_sync(self, collection: str, doc_id: str) -> DocumentSnapshot:
        with self.db.get_connection() as conn:
            return DocumentSnapshot(collection, doc_id, self._read(conn, collection, doc_id))

    def _query_sync(self, collection: str, filters: Optional[Filters],
                    predicate: Optional[Predicate], order_by: Optional[str],
                    descending: bool, limit: Optional[int]) -> List[DocumentSnapshot]:
        with self.db.get_connection() as conn:
            rows = conn.execute(
                "SELECT doc_id, data FROM documents WHERE collection = ?",
                (collection,)
            ).fetchall()

        results = []
        for row in rows:
            data = json.loads(row['data'])
            if _matches(data, filters, predicate):
                results.append(DocumentSnapshot(collection, row['doc_id'], data))

        if order_by:
            present = [s for s in results if get_path(s.data, order_by) is not None]
            missing = [s for s in results if get_path(s.data, order_by) is None]
            present.sort(key=lambda s: get_path(s.data, order_by), reverse=descending)
            results = present + missing
        if limit is not None:
            results = results[:limit]
        return results

    def _transact_sync(self, collection: str, doc_id: str,
                       fn: Callable[[DocumentTransaction], Any]) -> Tuple[Any, bool]:
        with self.db.transaction() as conn:
            now = self.clock()
            txn = DocumentTransaction(collection, doc_id, self._read(conn, collection, doc_id), now)
            result = fn(txn)
            if txn.dirty:
                if txn.data is None:
                    conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id)
                    )
                else:
                    self._write(conn, collection, doc_id, txn.data, now)
            return result, txn.dirty

    # -- public API ----------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        """Read one document"""
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    async def query(self, collection: str, filters: Optional[Filters] = None,
                    predicate: Optional[Predicate] = None, order_by: Optional[str] = None,
                    descending: bool = False, limit: Optional[int] = None) -> List[DocumentSnapshot]:
        """
        Query a collection.

        Args:
            filters: dotted path -> expected value; list/tuple/set values
                match when the field equals any member
            predicate: extra in-process filter over the document body
            order_by: dotted path to sort on; documents missing it sort last
        """
        return await asyncio.to_thread(
            self._query_sync, collection, filters, predicate, order_by, descending, limit
        )

    async def run_transaction(self, collection: str, doc_id: str,
                              fn: Callable[[DocumentTransaction], Any]) -> Any:
        """
        Run a single-document compare-and-set transaction.

        ``fn`` runs while the write lock is held; whatever it stages commits
        atomically with what it read. Exceptions raised by ``fn`` roll back
        and propagate unchanged.
        """
        result, wrote = await asyncio.to_thread(self._transact_sync, collection, doc_id, fn)
        if wrote:
            self._notify(collection, doc_id)
        return result

    async def create(self, collection: str, data: Dict[str, Any],
                     doc_id: Optional[str] = None) -> str:
        """Insert a new document and return its (store-assigned) id"""
        doc_id = doc_id or str(uuid.uuid4())

        def _insert(txn: DocumentTransaction):
            if txn.exists:
                raise DatabaseError(f"Document {collection}/{doc_id} already exists")
            txn.set(data)

        await self.run_transaction(collection, doc_id, _insert)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any],
                  merge: bool = False) -> None:
        """Create or overwrite a document (or merge into it)"""
        await self.run_transaction(collection, doc_id, lambda txn: txn.set(data, merge=merge))

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Apply dotted-path field updates; raises DocumentNotFoundError if absent"""
        await self.run_transaction(collection, doc_id, lambda txn: txn.update(fields))

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document, returning whether it existed"""
        def _delete(txn: DocumentTransaction) -> bool:
            existed = txn.exists
            if existed:
                txn.delete()
            return existed

        return await self.run_transaction(collection, doc_id, _delete)

    # -- change streams ------------------------------------------------

    async def subscribe_document(self, collection: str, doc_id: str,
                                 listener: Listener) -> Subscription:
        """Deliver the current snapshot and every committed change to one document"""
        subscription = Subscription(
            self, ('doc', collection, doc_id),
            lambda: self.get(collection, doc_id),
            listener
        )
        return await self._register(subscription)

    async def subscribe_query(self, collection: str, listener: Listener,
                              filters: Optional[Filters] = None,
                              predicate: Optional[Predicate] = None,
                              order_by: Optional[str] = None,
                              descending: bool = False,
                              limit: Optional[int] = None) -> Subscription:
        """Deliver the current result list and a fresh one after every write to the collection"""
        subscription = Subscription(
            self, ('query', collection),
            lambda: self.query(collection, filters, predicate, order_by, descending, limit),
            listener
        )
        return await self._register(subscription)

    async def _register(self, subscription: Subscription) -> Subscription:
        self._subscriptions.setdefault(subscription.key, []).append(subscription)
        subscription.trigger()
        await subscription.wait_idle()
        return subscription

    def _unregister(self, subscription: Subscription) -> None:
        listeners = self._subscriptions.get(subscription.key, [])
        if subscription in listeners:
            listeners.remove(subscription)
        if not listeners:
            self._subscriptions.pop(subscription.key, None)

    def _notify(self, collection: str, doc_id: str) -> None:
        for key in (('doc', collection, doc_id), ('query', collection)):
            for subscription in list(self._subscriptions.get(key, [])):
                subscription.trigger()

    def _track(self, task: asyncio.Task) -> None:
        self._listener_tasks.add(task)
        task.add_done_callback(self._listener_tasks.discard)

    @property
    def subscription_count(self) -> int:
        return sum(len(v) for v in self._subscriptions.values())

    async def drain(self) -> None:
        """Wait until every pending change-stream delivery has finished"""
        while self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)

    def close_subscriptions(self) -> None:
        for listeners in list(self._subscriptions.values()):
            for subscription in list(listeners):
                subscription.cancel()


def open_document_store(database_path: str, max_connections: int = 10,
                        clock: Callable[[], datetime] = utcnow) -> DocumentStore:
    """Open (and migrate) the database file and wrap it in a DocumentStore"""
    return DocumentStore(DatabaseManager(database_path, max_connections), clock=clock)
