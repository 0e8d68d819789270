"""Durable at-least-once task queue backed by SQLite.

Tasks move ``waiting -> active -> (removed | completed | failed)``. A failed
attempt goes back to ``waiting`` with exponential backoff until its attempt
budget is spent. Uses aiosqlite for async database operations.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_QUEUE_PATH = ".static_engine/queue.db"


class TaskState:
    """Task state constants."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskOptions:
    """Per-task delivery policy."""

    attempts: int = 2
    backoff_delay: float = 5.0
    remove_on_success: bool = True
    remove_on_failure: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff_delay": self.backoff_delay,
            "remove_on_success": self.remove_on_success,
            "remove_on_failure": self.remove_on_failure,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskOptions":
        return cls(
            attempts=data.get("attempts", 2),
            backoff_delay=data.get("backoff_delay", 5.0),
            remove_on_success=data.get("remove_on_success", True),
            remove_on_failure=data.get("remove_on_failure", False),
        )


@dataclass
class TaskSpec:
    """A task to be enqueued (used by ``add_bulk``)."""

    task_type: str
    payload: dict[str, Any]
    options: TaskOptions | None = None


@dataclass
class QueuedTask:
    """A task claimed by a worker."""

    id: str
    task_type: str
    payload: dict[str, Any]
    options: TaskOptions
    state: str
    attempts_made: int = 0
    last_error: str | None = None
    created_at: str = ""
    run_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def attempt(self) -> int:
        """1-based number of the attempt in progress."""
        return self.attempts_made + 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue:
    """Async SQLite task queue.

    The queue is an explicitly constructed object: the process entry point
    owns ``connect()``/``close()`` and hands the instance to producers and
    to the worker pool.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_QUEUE_PATH,
        name: str = "generation",
        default_options: TaskOptions | None = None,
    ):
        """Initialize the queue.

        Args:
            db_path: Path to SQLite database file
            name: Queue name (several queues can share one file)
            default_options: Options used when a task does not specify any
        """
        self.db_path = Path(db_path)
        self.name = name
        self.default_options = default_options or TaskOptions()
        self.db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()

    async def connect(self) -> None:
        """Open the connection and create the tasks table."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA journal_mode=WAL")

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                type TEXT NOT NULL,
                state TEXT NOT NULL,
                payload JSON NOT NULL,
                options JSON NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                run_at TEXT NOT NULL
            )
        """)
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_queue_state_run_at
            ON tasks (queue, state, run_at)
        """)
        await self.db.commit()
        logger.info(f"Task queue '{self.name}' connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None
            logger.info(f"Task queue '{self.name}' connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Task queue not connected. Call connect() first.")
        return self.db

    async def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        options: TaskOptions | None = None,
    ) -> str:
        """Add one task.

        Returns:
            The new task ID
        """
        ids = await self.add_bulk([TaskSpec(task_type, payload, options)])
        return ids[0]

    async def add_bulk(self, specs: list[TaskSpec]) -> list[str]:
        """Add several tasks in one transaction.

        Returns:
            Task IDs in the order given
        """
        db = self._conn()
        now = _now().isoformat()
        rows = []
        for spec in specs:
            options = spec.options or self.default_options
            rows.append(
                (
                    str(uuid.uuid4()),
                    self.name,
                    spec.task_type,
                    TaskState.WAITING,
                    json.dumps(spec.payload, default=str),
                    json.dumps(options.to_dict()),
                    now,
                    now,
                    now,
                )
            )

        async with self._lock:
            try:
                await db.executemany(
                    "INSERT INTO tasks (id, queue, type, state, payload, options, "
                    "created_at, updated_at, run_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        self._wakeup.set()
        logger.info(f"Queued {len(rows)} task(s) on '{self.name}'")
        return [row[0] for row in rows]

    async def claim_next(self) -> QueuedTask | None:
        """Claim the oldest runnable task (``waiting`` and due).

        Returns:
            The claimed task, or None when nothing is runnable
        """
        db = self._conn()
        now = _now().isoformat()

        async with self._lock:
            async with db.execute(
                "UPDATE tasks SET state = ?, updated_at = ? WHERE id = ("
                "SELECT id FROM tasks WHERE queue = ? AND state = ? AND run_at <= ? "
                "ORDER BY run_at ASC, rowid ASC LIMIT 1"
                ") AND state = ? RETURNING *",
                (TaskState.ACTIVE, now, self.name, TaskState.WAITING, now, TaskState.WAITING),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()

        if row is None:
            self._wakeup.clear()
            return None
        return self._row_to_task(row)

    async def complete(self, task: QueuedTask) -> None:
        """Record a successful attempt."""
        db = self._conn()
        async with self._lock:
            if task.options.remove_on_success:
                await db.execute("DELETE FROM tasks WHERE id = ?", (task.id,))
            else:
                await db.execute(
                    "UPDATE tasks SET state = ?, updated_at = ?, attempts_made = ? WHERE id = ?",
                    (TaskState.COMPLETED, _now().isoformat(), task.attempts_made + 1, task.id),
                )
            await db.commit()
        logger.debug(f"Task {task.id} completed")

    async def fail(self, task: QueuedTask, error: str) -> bool:
        """Record a failed attempt and schedule a retry if budget remains.

        Returns:
            True if the task will be retried, False if it is finished
        """
        db = self._conn()
        attempts_made = task.attempts_made + 1
        now = _now()

        async with self._lock:
            if attempts_made < task.options.attempts:
                delay = task.options.backoff_delay * (2 ** (attempts_made - 1))
                run_at = (now + timedelta(seconds=delay)).isoformat()
                await db.execute(
                    "UPDATE tasks SET state = ?, attempts_made = ?, last_error = ?, "
                    "updated_at = ?, run_at = ? WHERE id = ?",
                    (TaskState.WAITING, attempts_made, error, now.isoformat(), run_at, task.id),
                )
                retrying = True
            elif task.options.remove_on_failure:
                await db.execute("DELETE FROM tasks WHERE id = ?", (task.id,))
                retrying = False
            else:
                await db.execute(
                    "UPDATE tasks SET state = ?, attempts_made = ?, last_error = ?, "
                    "updated_at = ? WHERE id = ?",
                    (TaskState.FAILED, attempts_made, error, now.isoformat(), task.id),
                )
                retrying = False
            await db.commit()

        if retrying:
            logger.warning(
                f"Task {task.id} attempt {attempts_made}/{task.options.attempts} failed, "
                f"retry scheduled: {error}"
            )
        else:
            logger.error(f"Task {task.id} failed permanently after {attempts_made} attempt(s): {error}")
        return retrying

    async def recover_stalled(self) -> int:
        """Return tasks left ``active`` by a crashed process to ``waiting``.

        Returns:
            Number of recovered tasks
        """
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "UPDATE tasks SET state = ?, updated_at = ? WHERE queue = ? AND state = ?",
                (TaskState.WAITING, _now().isoformat(), self.name, TaskState.ACTIVE),
            )
            await db.commit()
            recovered = cursor.rowcount

        if recovered:
            logger.warning(f"Recovered {recovered} stalled task(s) on '{self.name}'")
            self._wakeup.set()
        return recovered

    async def get_task(self, task_id: str) -> QueuedTask | None:
        db = self._conn()
        async with db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
            row = await cursor.fetchone()
            return self._row_to_task(row) if row else None

    async def list_tasks(self, state: str | None = None, limit: int = 100) -> list[QueuedTask]:
        """List tasks on this queue, oldest first."""
        db = self._conn()
        query = "SELECT * FROM tasks WHERE queue = ?"
        params: list[Any] = [self.name]
        if state:
            query += " AND state = ?"
            params.append(state)
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_task(row) for row in rows]

    async def counts(self) -> dict[str, int]:
        """Number of tasks per state."""
        db = self._conn()
        result = {
            TaskState.WAITING: 0,
            TaskState.ACTIVE: 0,
            TaskState.COMPLETED: 0,
            TaskState.FAILED: 0,
        }
        async with db.execute(
            "SELECT state, COUNT(*) FROM tasks WHERE queue = ? GROUP BY state",
            (self.name,),
        ) as cursor:
            for row in await cursor.fetchall():
                result[row[0]] = row[1]
        return result

    async def wait_for_task(self, timeout: float) -> None:
        """Sleep until a task is enqueued or ``timeout`` elapses."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> QueuedTask:
        return QueuedTask(
            id=row["id"],
            task_type=row["type"],
            payload=json.loads(row["payload"]),
            options=TaskOptions.from_dict(json.loads(row["options"])),
            state=row["state"],
            attempts_made=row["attempts_made"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            run_at=row["run_at"],
        )
