#!/usr/bin/env python3
"""
Database models and operations for the Battle Notifier.

Battles are stored as JSON documents keyed by their upstream id. All access
goes through a single asyncio worker (DatabaseQueue) so that the fetcher and
the notifier can share one SQLite connection without locking.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait, wait_for, TimeoutError, CancelledError, Event, FIRST_COMPLETED
from uuid import uuid4
from typing import Dict, List, Optional, Any, NamedTuple

# Import config for unified logging
from config import config, get_logger
from errors import StoreError, StoreWriteError
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Operations that mutate the battles table; failures surface as StoreWriteError
WRITE_OPERATIONS = frozenset({"insert_new_battles", "mark_battles_read", "prune_read_battles"})


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql (idempotent)."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='battles'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class WriteOutcome(NamedTuple):
    """Result of applying one item of a bulk write."""
    battle_id: Any
    ok: bool
    changed: bool
    error: Optional[str] = None


class BulkWriteResult:
    """Per-item outcomes of an unordered, best-effort bulk write."""

    def __init__(self, outcomes: Optional[List[WriteOutcome]] = None):
        self.outcomes: List[WriteOutcome] = list(outcomes or [])

    @property
    def changed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok and o.changed)

    # Named after the counters reported for upserts and updates respectively
    inserted_count = changed_count
    modified_count = changed_count

    @property
    def failed(self) -> List[WriteOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def __repr__(self) -> str:
        return f"BulkWriteResult(changed={self.changed_count}, failed={len(self.failed)}, total={len(self.outcomes)})"


def _row_to_battle(row) -> Dict[str, Any]:
    battle = json.loads(row['payload'])
    battle['id'] = row['id']
    battle['read'] = bool(row['read'])
    return battle


class DatabaseQueue:
    """A queue for database operations to ensure all access is serialized."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self.startup_error: Optional[Exception] = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.startup_error = None
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if self.worker_task is None:
            return

        self.running = False
        self.worker_task.cancel()
        try:
            await self.worker_task
        except CancelledError:
            pass
        except Exception as e:
            logger.error(f"Database worker exited with an error: {e}")
        self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so nothing hangs on shutdown
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Unable to open database at {self.db_path}: {e}")
            self.startup_error = e
            self.running = False
            if self.conn:
                self.conn.close()
                self.conn = None
            return

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if hasattr(self, operation_name) and not operation_name.startswith('_'):
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @staticmethod
    def _error_class(operation_name: str) -> type:
        return StoreWriteError if operation_name in WRITE_OPERATIONS else StoreError

    def _unavailable_reason(self) -> str:
        if self.startup_error is not None:
            return f"Database unavailable: {self.startup_error}"
        return "Database worker is not running"

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result.

        Raises:
            StoreWriteError: if a write operation failed as a whole
            StoreError: if any other operation failed
        """
        if not self.running or self.worker_task is None or self.worker_task.done():
            raise self._error_class(operation_name)(self._unavailable_reason(), operation=operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            # The worker may die while we wait; don't wait on it forever
            waiter = create_task(event.wait())
            try:
                await wait({waiter, self.worker_task}, return_when=FIRST_COMPLETED)
            finally:
                waiter.cancel()
            if not event.is_set():
                raise self._error_class(operation_name)(self._unavailable_reason(), operation=operation_name)

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError("Database worker stopped before completing operation", operation=operation_name)
            if "error" in result:
                raise self._error_class(operation_name)(result["error"], operation=operation_name)

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Battle Operations
    def latest_battle_id(self) -> int:
        """Return the highest stored battle id, or 0 if there are none."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MAX(id) FROM battles")
            row = cursor.fetchone()
            return int(row[0]) if row and row[0] is not None else 0
        finally:
            cursor.close()

    def insert_new_battles(self, battles: List[Dict[str, Any]]) -> BulkWriteResult:
        """Insert battles that aren't stored yet, leaving existing rows untouched.

        Each battle is applied independently; a bad item is recorded as a
        failed outcome and does not prevent the others from being inserted.
        """
        outcomes: List[WriteOutcome] = []
        if not battles:
            return BulkWriteResult(outcomes)

        now = int(time())
        cursor = self.conn.cursor()
        try:
            for battle in battles:
                battle_id = battle.get('id') if isinstance(battle, dict) else None
                try:
                    if isinstance(battle_id, bool) or not isinstance(battle_id, int):
                        raise ValueError(f"invalid battle id {battle_id!r}")
                    payload = {k: v for k, v in battle.items() if k != 'read'}
                    cursor.execute(
                        "INSERT OR IGNORE INTO battles (id, total_fame, read, payload, inserted_at) VALUES (?, ?, 0, ?, ?)",
                        (battle_id, battle.get('totalFame') or 0, json.dumps(payload), now)
                    )
                    outcomes.append(WriteOutcome(battle_id, True, cursor.rowcount > 0))
                except (Error, ValueError, TypeError) as e:
                    logger.error(f"Error inserting battle {battle_id}: {e}")
                    outcomes.append(WriteOutcome(battle_id, False, False, str(e)))
            self.conn.commit()
        finally:
            cursor.close()

        return BulkWriteResult(outcomes)

    def query_unread_battles(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """Return up to `limit` unread battles, oldest first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id, read, payload FROM battles WHERE read = 0 ORDER BY id ASC LIMIT ?",
                (int(limit),)
            )
            return [_row_to_battle(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def mark_battles_read(self, battle_ids: List[int]) -> BulkWriteResult:
        """Flag battles as read. Already-read or unknown ids count as unchanged."""
        outcomes: List[WriteOutcome] = []
        if not battle_ids:
            return BulkWriteResult(outcomes)

        cursor = self.conn.cursor()
        try:
            for battle_id in battle_ids:
                try:
                    cursor.execute("UPDATE battles SET read = 1 WHERE id = ? AND read = 0", (battle_id,))
                    outcomes.append(WriteOutcome(battle_id, True, cursor.rowcount > 0))
                except Error as e:
                    logger.error(f"Error marking battle {battle_id} as read: {e}")
                    outcomes.append(WriteOutcome(battle_id, False, False, str(e)))
            self.conn.commit()
        finally:
            cursor.close()

        return BulkWriteResult(outcomes)

    def prune_read_battles(self) -> int:
        """Delete every battle older than the newest read battle.

        Returns:
            Number of battles deleted (0 when nothing has been read yet).
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MAX(id) FROM battles WHERE read = 1")
            row = cursor.fetchone()
            if not row or row[0] is None:
                logger.debug("No read battles yet; nothing to prune")
                return 0

            cursor.execute("DELETE FROM battles WHERE id < ?", (row[0],))
            deleted = cursor.rowcount
            self.conn.commit()
            if deleted:
                logger.debug(f"Pruned {deleted} battles older than battle {row[0]}")
            return deleted
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def count_battles(self, read: Optional[bool] = None) -> int:
        """Return the number of stored battles, optionally filtered by read state."""
        cursor = self.conn.cursor()
        try:
            if read is None:
                cursor.execute("SELECT COUNT(*) FROM battles")
            else:
                cursor.execute("SELECT COUNT(*) FROM battles WHERE read = ?", (1 if read else 0,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()
