import asyncio
import contextvars
import datetime
import logging
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

import aiosqlite

from errors import TransactionFailure, ValidationError
from migrate import MigrationResult, run_migrations, table_columns
from models import (
    ActivityKind,
    BodyWeight,
    ChangeQueueEntry,
    DailyLog,
    Exercise,
    Goal,
    GoalKind,
    GoalState,
    Milestone,
    MilestoneKind,
    Notification,
    NotificationKind,
    Streak,
    SyncOperation,
    User,
    Workout,
    WorkoutExercise,
    WorkoutSet,
    normalise_date,
    now_timestamp,
    parse_date,
)

if TYPE_CHECKING:
    from change_queue import ChangeQueue

logger = logging.getLogger(__name__)


DEFAULT_EXERCISES: List[Tuple[str, str, str]] = [
    ("Bench Press", "Chest", "Lie on a flat bench and push a weighted barbell upward."),
    ("Incline Dumbbell Press", "Chest", "Lie on an inclined bench and push dumbbells upward."),
    ("Chest Fly", "Chest", "Lie on a bench and move weights in an arc motion."),
    ("Push-Up", "Chest", "A bodyweight exercise where you push your body up from the ground."),
    ("Deadlift", "Back", "Lift a weighted barbell off the ground to hip level."),
    ("Pull-Up", "Back", "Pull your body upward while hanging from a bar."),
    ("Bent Over Row", "Back", "Bend at the waist and pull weights up toward your torso."),
    ("Lat Pulldown", "Back", "Pull a weighted bar down while seated."),
    ("Squat", "Legs", "Bend your knees and lower your body while keeping your back straight."),
    ("Leg Press", "Legs", "Push a weighted platform away from you with your legs."),
    ("Leg Extension", "Legs", "Extend your legs against resistance while seated."),
    ("Leg Curl", "Legs", "Curl your legs toward your backside against resistance."),
    ("Shoulder Press", "Shoulders", "Push weights overhead from shoulder height."),
    ("Lateral Raise", "Shoulders", "Raise weights out to the sides until arms are parallel to the floor."),
    ("Front Raise", "Shoulders", "Raise weights in front of you until arms are parallel to the floor."),
    ("Bicep Curl", "Biceps", "Curl weights up toward your shoulders."),
    ("Hammer Curl", "Biceps", "Curl weights with palms facing inward."),
    ("Tricep Extension", "Triceps", "Extend your arms against resistance."),
    ("Tricep Dip", "Triceps", "Lower and raise your body using your arms while supported."),
    ("Crunch", "Abs", "Raise your torso toward your knees while lying down."),
    ("Plank", "Abs", "Hold a position similar to a push-up, supporting your weight on forearms and toes."),
    ("Leg Raise", "Abs", "Raise your legs while lying on your back."),
]


class Database:
    """Provides SQLite schema initialization, migrations and reference data."""

    _TABLE_DEFINITIONS = {
        "users": (
            """CREATE TABLE users (
                    user_id TEXT PRIMARY KEY,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    height_cm REAL CHECK (height_cm > 0),
                    registration_date DATETIME DEFAULT CURRENT_TIMESTAMP,
                    last_login DATETIME
                );""",
            [
                "user_id",
                "first_name",
                "last_name",
                "height_cm",
                "registration_date",
                "last_login",
            ],
        ),
        "user_metrics": (
            """CREATE TABLE user_metrics (
                    metric_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    weight_kg REAL CHECK (weight_kg > 0),
                    measured_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                );""",
            ["metric_id", "user_id", "weight_kg", "measured_at"],
        ),
        "exercise": (
            """CREATE TABLE exercise (
                    exercise_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    muscle_group TEXT,
                    description TEXT
                );""",
            ["exercise_id", "name", "muscle_group", "description"],
        ),
        "workout": (
            """CREATE TABLE workout (
                    workout_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    date DATE NOT NULL,
                    duration INTEGER CHECK (duration IS NULL OR duration > 0),
                    notes TEXT,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                );""",
            ["workout_id", "user_id", "date", "duration", "notes"],
        ),
        "workout_exercise": (
            """CREATE TABLE workout_exercise (
                    workout_exercise_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_id INTEGER NOT NULL,
                    exercise_id INTEGER NOT NULL,
                    FOREIGN KEY (workout_id) REFERENCES workout(workout_id),
                    FOREIGN KEY (exercise_id) REFERENCES exercise(exercise_id)
                );""",
            ["workout_exercise_id", "workout_id", "exercise_id"],
        ),
        "workout_set": (
            """CREATE TABLE workout_set (
                    workout_set_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_exercise_id INTEGER NOT NULL,
                    set_number INTEGER NOT NULL CHECK (set_number > 0),
                    reps INTEGER CHECK (reps IS NULL OR reps >= 0),
                    weight REAL CHECK (weight IS NULL OR weight >= 0),
                    FOREIGN KEY (workout_exercise_id) REFERENCES workout_exercise(workout_exercise_id),
                    UNIQUE (workout_exercise_id, set_number)
                );""",
            ["workout_set_id", "workout_exercise_id", "set_number", "reps", "weight"],
        ),
        "goal": (
            """CREATE TABLE goal (
                    goal_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('ExerciseTarget','WorkoutFrequency','WeightTarget')),
                    exercise_id INTEGER,
                    target_value REAL,
                    start_date DATE NOT NULL,
                    end_date DATE NOT NULL,
                    achieved INTEGER DEFAULT 0 CHECK (achieved IN (0, 1, 2)),
                    current_progress REAL DEFAULT 0,
                    starting_weight REAL,
                    achieved_date DATE,
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    FOREIGN KEY (exercise_id) REFERENCES exercise(exercise_id),
                    CHECK (
                        (type = 'ExerciseTarget' AND exercise_id IS NOT NULL) OR
                        (type <> 'ExerciseTarget' AND exercise_id IS NULL)
                    )
                );""",
            [
                "goal_id",
                "user_id",
                "type",
                "exercise_id",
                "target_value",
                "start_date",
                "end_date",
                "achieved",
                "current_progress",
                "starting_weight",
                "achieved_date",
            ],
        ),
        "daily_log": (
            """CREATE TABLE daily_log (
                    daily_log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    date DATE NOT NULL,
                    activity_type TEXT NOT NULL CHECK (activity_type IN ('workout','rest')),
                    notes TEXT,
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    UNIQUE (user_id, date)
                );""",
            ["daily_log_id", "user_id", "date", "activity_type", "notes"],
        ),
        "streak": (
            """CREATE TABLE streak (
                    user_id TEXT PRIMARY KEY,
                    current_streak INT DEFAULT 0 CHECK (current_streak >= 0),
                    longest_streak INT DEFAULT 0 CHECK (longest_streak >= 0),
                    last_activity_date DATE,
                    last_workout_date DATE,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                );""",
            [
                "user_id",
                "current_streak",
                "longest_streak",
                "last_activity_date",
                "last_workout_date",
            ],
        ),
        "notification": (
            """CREATE TABLE notification (
                    notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('GoalProgress','NewStreak','Milestone')),
                    message TEXT NOT NULL,
                    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                    is_read BOOLEAN DEFAULT FALSE,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                );""",
            ["notification_id", "user_id", "type", "message", "timestamp", "is_read"],
        ),
        "milestone": (
            """CREATE TABLE milestone (
                    milestone_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('PersonalBest','LongestStreak','GoalAchieved')),
                    exercise_id INTEGER,
                    value REAL,
                    date DATE NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    FOREIGN KEY (exercise_id) REFERENCES exercise(exercise_id)
                );""",
            ["milestone_id", "user_id", "type", "exercise_id", "value", "date"],
        ),
        "sync_queue": (
            """CREATE TABLE sync_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    synced BOOLEAN DEFAULT FALSE,
                    retry_count INTEGER DEFAULT 0,
                    last_error TEXT,
                    UNIQUE (table_name, record_id, operation)
                );""",
            [
                "id",
                "table_name",
                "record_id",
                "operation",
                "timestamp",
                "synced",
                "retry_count",
                "last_error",
            ],
        ),
    }

    _INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_workout_user_date ON workout(user_id, date);",
        "CREATE INDEX IF NOT EXISTS idx_workout_exercise_workout ON workout_exercise(workout_id);",
        "CREATE INDEX IF NOT EXISTS idx_workout_set_parent ON workout_set(workout_exercise_id);",
        "CREATE INDEX IF NOT EXISTS idx_goal_user_state ON goal(user_id, achieved);",
        "CREATE INDEX IF NOT EXISTS idx_milestone_user ON milestone(user_id, type);",
        "CREATE INDEX IF NOT EXISTS idx_sync_queue_pending ON sync_queue(synced, timestamp);",
    ]

    def __init__(self, db_path: str = "fitness.db") -> None:
        self._db_path = db_path
        self.migration_results: List[MigrationResult] = []
        self._ensure_schema()
        self._ensure_indexes()
        self._seed_exercises()

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path, isolation_level=None)
        try:
            yield connection
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA foreign_keys=off;")
            for table, (sql, _columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql)
            self.migration_results = run_migrations(conn, self._TABLE_DEFINITIONS)

    def _ensure_table(self, conn: sqlite3.Connection, table: str, sql: str) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is not None:
            return
        try:
            conn.execute(sql)
        except sqlite3.Error as exc:
            logger.warning("could not create table %s: %s", table, exc)

    def _ensure_indexes(self) -> None:
        with self._connection() as conn:
            for sql in self._INDEXES:
                try:
                    conn.execute(sql)
                except sqlite3.Error as exc:
                    logger.warning("could not create index: %s", exc)

    def _seed_exercises(self) -> None:
        with self._connection() as conn:
            try:
                count = conn.execute("SELECT COUNT(*) FROM exercise;").fetchone()[0]
                if count:
                    return
                conn.execute("BEGIN;")
                conn.executemany(
                    "INSERT INTO exercise (name, muscle_group, description) VALUES (?, ?, ?);",
                    DEFAULT_EXERCISES,
                )
                conn.execute("COMMIT;")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                logger.warning("could not seed the exercise catalogue: %s", exc)
                return
        logger.info("seeded %d exercises", len(DEFAULT_EXERCISES))

    def schema_drift(self) -> Dict[str, List[str]]:
        """Return tables whose live columns differ from their definition."""
        drift: Dict[str, List[str]] = {}
        with self._connection() as conn:
            for table, (_sql, columns) in self._TABLE_DEFINITIONS.items():
                existing = table_columns(conn, table)
                missing = [c for c in columns if c not in existing]
                if missing:
                    drift[table] = missing
        return drift


class _Transaction:
    def __init__(self, db: "AsyncDatabase") -> None:
        self.db = db
        self.callbacks: List[Callable[[], Awaitable[None]]] = []


_ACTIVE_TRANSACTION: contextvars.ContextVar[Optional[_Transaction]] = contextvars.ContextVar(
    "fitness_active_transaction", default=None
)


class AsyncDatabase(Database):
    """Owns the single aiosqlite handle and serialises every write through it.

    Writes and transactions take one ``asyncio.Lock``; waiting longer than
    ``lock_timeout`` seconds raises ``TransactionFailure`` with
    ``timed_out`` set. Reads outside a transaction wait for the lock too,
    so they only ever see committed rows.
    """

    def __init__(self, db_path: str = "fitness.db", lock_timeout: float = 10.0) -> None:
        super().__init__(db_path)
        self.lock_timeout = lock_timeout
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> "AsyncDatabase":
        if self._conn is None:
            self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            async with self._conn.execute("PRAGMA foreign_keys = ON;"):
                pass
        return self

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()

    async def __aenter__(self) -> "AsyncDatabase":
        return await self.connect()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("database is not connected")
        return self._conn

    def _current(self) -> Optional[_Transaction]:
        tx = _ACTIVE_TRANSACTION.get()
        return tx if tx is not None and tx.db is self else None

    @property
    def in_transaction(self) -> bool:
        return self._current() is not None

    async def _acquire(self) -> None:
        try:
            await asyncio.wait_for(self._lock.acquire(), self.lock_timeout)
        except asyncio.TimeoutError as exc:
            raise TransactionFailure(
                "timed out waiting for the write lock; re-query before retrying",
                {"timeout": self.lock_timeout},
                timed_out=True,
            ) from exc

    async def _rollback(self) -> None:
        try:
            if self.connection.in_transaction:
                await self.connection.execute("ROLLBACK;")
        except sqlite3.Error as exc:
            logger.warning("rollback failed: %s", exc)

    @asynccontextmanager
    async def transaction(self):
        """Run the block atomically; a nested call joins the outer transaction."""
        current = self._current()
        if current is not None:
            yield current
            return
        await self._acquire()
        tx = _Transaction(self)
        token = _ACTIVE_TRANSACTION.set(tx)
        try:
            await self.connection.execute("BEGIN IMMEDIATE;")
            try:
                yield tx
                await self.connection.execute("COMMIT;")
            except BaseException:
                await self._rollback()
                raise
        except sqlite3.Error as exc:
            raise TransactionFailure(f"transaction rolled back: {exc}") from exc
        finally:
            _ACTIVE_TRANSACTION.reset(token)
            self._lock.release()
        for callback in tx.callbacks:
            try:
                await callback()
            except Exception:
                logger.exception("post-commit callback failed")

    async def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Run ``callback`` once the current transaction commits, or now."""
        tx = self._current()
        if tx is not None:
            tx.callbacks.append(callback)
            return
        await callback()

    async def _run(self, query: str, params: Tuple) -> Tuple[int, int]:
        async with self.connection.execute(query, params) as cursor:
            return cursor.lastrowid, cursor.rowcount

    async def _write(self, query: str, params: Tuple) -> Tuple[int, int]:
        if self.in_transaction:
            return await self._run(query, params)
        await self._acquire()
        try:
            return await self._run(query, params)
        except sqlite3.Error as exc:
            raise TransactionFailure(str(exc), {"query": query}) from exc
        finally:
            self._lock.release()

    async def execute(self, query: str, params: Tuple = ()) -> int:
        """Run a write and return the last inserted row id."""
        lastrowid, _ = await self._write(query, params)
        return lastrowid

    async def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Run a write and return the number of affected rows."""
        _, rowcount = await self._write(query, params)
        return rowcount

    @asynccontextmanager
    async def _reading(self):
        # Outside its own transaction a reader waits for any open one to
        # finish, so it never sees rows that may still roll back.
        if self.in_transaction:
            yield
            return
        await self._acquire()
        try:
            yield
        finally:
            self._lock.release()

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        async with self._reading():
            async with self.connection.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._reading():
            async with self.connection.execute(query, params) as cursor:
                return await cursor.fetchone()


class AsyncBaseRepository:
    """Repository helpers over a shared ``AsyncDatabase`` handle."""

    table = ""
    key = ""

    def __init__(self, db: AsyncDatabase, queue: Optional["ChangeQueue"] = None) -> None:
        self.db = db
        self.queue = queue

    async def execute(self, query: str, params: Tuple = ()) -> int:
        return await self.db.execute(query, params)

    async def execute_update(self, query: str, params: Tuple = ()) -> int:
        return await self.db.execute_update(query, params)

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        return await self.db.fetch_all(query, params)

    async def fetch_one(self, query: str, params: Tuple = ()) -> Optional[aiosqlite.Row]:
        return await self.db.fetch_one(query, params)

    async def _insert(self, values: Dict[str, Any]) -> Any:
        """Insert ``values``; an explicit primary key updates the existing row."""
        if values.get(self.key) is None:
            values = {k: v for k, v in values.items() if k != self.key}
        columns = list(values)
        query = (
            f"INSERT INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != self.key)
        if self.key in values and updates:
            query += f" ON CONFLICT({self.key}) DO UPDATE SET {updates}"
        rowid = await self.execute(query + ";", tuple(values.values()))
        return values.get(self.key, rowid)

    async def _mark(self, record_id: Any, operation: SyncOperation) -> None:
        if self.queue is None:
            return
        queue, table = self.queue, self.table

        async def mark() -> None:
            await queue.enqueue(table, str(record_id), operation)

        await self.db.after_commit(mark)


class UserRepository(AsyncBaseRepository):
    table = "users"
    key = "user_id"

    async def upsert(self, user: User) -> None:
        await self._insert(user.to_row())
        await self._mark(user.user_id, SyncOperation.INSERT)

    async def get(self, user_id: str) -> Optional[User]:
        row = await self.fetch_one("SELECT * FROM users WHERE user_id = ?;", (user_id,))
        return User.from_row(row) if row else None

    async def update(self, user: User) -> bool:
        changed = await self.execute_update(
            "UPDATE users SET first_name = ?, last_name = ?, height_cm = ? WHERE user_id = ?;",
            (user.first_name, user.last_name, user.height_cm, user.user_id),
        )
        if changed:
            await self._mark(user.user_id, SyncOperation.UPDATE)
        return bool(changed)

    async def record_login(self, user_id: str, timestamp: Optional[str] = None) -> bool:
        changed = await self.execute_update(
            "UPDATE users SET last_login = ? WHERE user_id = ?;",
            (timestamp or now_timestamp(), user_id),
        )
        if changed:
            await self._mark(user_id, SyncOperation.UPDATE)
        return bool(changed)

    async def delete(self, user_id: str, sync: bool = True) -> bool:
        changed = await self.execute_update("DELETE FROM users WHERE user_id = ?;", (user_id,))
        if changed and sync:
            await self._mark(user_id, SyncOperation.DELETE)
        return bool(changed)


class BodyWeightRepository(AsyncBaseRepository):
    """Repository for body weight measurements."""

    table = "user_metrics"
    key = "metric_id"

    async def log(self, user_id: str, weight: float, measured_at: Optional[str] = None) -> int:
        if weight is None or weight <= 0:
            raise ValidationError("weight must be positive")
        metric_id = await self._insert(
            {
                "user_id": user_id,
                "weight_kg": float(weight),
                "measured_at": measured_at or now_timestamp(),
            }
        )
        await self._mark(metric_id, SyncOperation.INSERT)
        return metric_id

    async def fetch_history(
        self, user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> List[BodyWeight]:
        query = "SELECT * FROM user_metrics WHERE user_id = ?"
        params: List[Any] = [user_id]
        if start_date:
            query += " AND measured_at >= ?"
            params.append(start_date)
        if end_date:
            query += " AND substr(measured_at, 1, 10) <= ?"
            params.append(end_date)
        query += " ORDER BY measured_at, metric_id;"
        rows = await self.fetch_all(query, tuple(params))
        return [BodyWeight.from_row(r) for r in rows]

    async def fetch_latest(self, user_id: str) -> Optional[BodyWeight]:
        """Return the most recent measurement if available."""
        row = await self.fetch_one(
            "SELECT * FROM user_metrics WHERE user_id = ? "
            "ORDER BY measured_at DESC, metric_id DESC LIMIT 1;",
            (user_id,),
        )
        return BodyWeight.from_row(row) if row else None

    async def delete(self, metric_id: int) -> bool:
        changed = await self.execute_update(
            "DELETE FROM user_metrics WHERE metric_id = ?;", (metric_id,)
        )
        if changed:
            await self._mark(metric_id, SyncOperation.DELETE)
        return bool(changed)


class ExerciseRepository(AsyncBaseRepository):
    """Reference catalogue of exercises; never queued for sync."""

    table = "exercise"
    key = "exercise_id"

    async def add(self, exercise: Exercise) -> int:
        return await self._insert(
            {
                "exercise_id": exercise.exercise_id,
                "name": exercise.name,
                "muscle_group": exercise.muscle_group,
                "description": exercise.description,
            }
        )

    async def get(self, exercise_id: int) -> Optional[Exercise]:
        row = await self.fetch_one(
            "SELECT * FROM exercise WHERE exercise_id = ?;", (exercise_id,)
        )
        return Exercise.from_row(row) if row else None

    async def fetch_all_exercises(self) -> List[Exercise]:
        rows = await self.fetch_all(
            "SELECT * FROM exercise ORDER BY muscle_group, name;"
        )
        return [Exercise.from_row(r) for r in rows]

    async def fetch_by_muscle_group(self, muscle_group: str) -> List[Exercise]:
        rows = await self.fetch_all(
            "SELECT * FROM exercise WHERE muscle_group = ? ORDER BY name;",
            (muscle_group,),
        )
        return [Exercise.from_row(r) for r in rows]

    async def muscle_groups(self) -> List[str]:
        rows = await self.fetch_all(
            "SELECT DISTINCT muscle_group FROM exercise "
            "WHERE muscle_group IS NOT NULL ORDER BY muscle_group;"
        )
        return [r[0] for r in rows]


class WorkoutRepository(AsyncBaseRepository):
    """Repository for workout rows and the aggregate queries over them."""

    table = "workout"
    key = "workout_id"

    async def create(self, workout: Workout, sync: bool = True) -> int:
        workout_id = await self._insert(workout.to_row())
        if sync:
            await self._mark(workout_id, SyncOperation.INSERT)
        return workout_id

    async def get(self, workout_id: int) -> Optional[Workout]:
        row = await self.fetch_one(
            "SELECT * FROM workout WHERE workout_id = ?;", (workout_id,)
        )
        return Workout.from_row(row) if row else None

    async def fetch_for_user(
        self,
        user_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Workout]:
        query = "SELECT * FROM workout WHERE user_id = ?"
        params: List[Any] = [user_id]
        if start_date:
            query += " AND date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        query += " ORDER BY date DESC, workout_id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await self.fetch_all(query + ";", tuple(params))
        return [Workout.from_row(r) for r in rows]

    async def fetch_for_date(self, user_id: str, date: str) -> List[Workout]:
        rows = await self.fetch_all(
            "SELECT * FROM workout WHERE user_id = ? AND date = ? ORDER BY workout_id;",
            (user_id, date),
        )
        return [Workout.from_row(r) for r in rows]

    async def fetch_dates(
        self, user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> List[datetime.date]:
        query = "SELECT DISTINCT date FROM workout WHERE user_id = ?"
        params: List[Any] = [user_id]
        if start_date:
            query += " AND date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        rows = await self.fetch_all(query + " ORDER BY date;", tuple(params))
        return [parse_date(r[0]) for r in rows]

    async def count_in_range(self, user_id: str, start_date: str, end_date: str) -> int:
        row = await self.fetch_one(
            "SELECT COUNT(*) FROM workout WHERE user_id = ? AND date BETWEEN ? AND ?;",
            (user_id, start_date, end_date),
        )
        return int(row[0]) if row else 0

    async def update(self, workout: Workout) -> bool:
        changed = await self.execute_update(
            "UPDATE workout SET date = ?, duration = ?, notes = ? WHERE workout_id = ?;",
            (workout.date.isoformat(), workout.duration, workout.notes, workout.workout_id),
        )
        if changed:
            await self._mark(workout.workout_id, SyncOperation.UPDATE)
        return bool(changed)

    async def delete(self, workout_id: int, sync: bool = True) -> bool:
        changed = await self.execute_update(
            "DELETE FROM workout WHERE workout_id = ?;", (workout_id,)
        )
        if changed and sync:
            await self._mark(workout_id, SyncOperation.DELETE)
        return bool(changed)

    async def max_weight(
        self, user_id: str, exercise_id: int, before_workout_id: Optional[int] = None
    ) -> Optional[float]:
        """Heaviest set weight logged by ``user_id`` for ``exercise_id``.

        With ``before_workout_id`` only workouts committed before that one
        count; ids are AUTOINCREMENT so they follow commit order.
        """
        query = (
            "SELECT MAX(ws.weight) FROM workout_set ws "
            "JOIN workout_exercise we ON ws.workout_exercise_id = we.workout_exercise_id "
            "JOIN workout w ON we.workout_id = w.workout_id "
            "WHERE we.exercise_id = ? AND w.user_id = ?"
        )
        params: List[Any] = [exercise_id, user_id]
        if before_workout_id is not None:
            query += " AND w.workout_id < ?"
            params.append(before_workout_id)
        row = await self.fetch_one(query + ";", tuple(params))
        if row is None or row[0] is None:
            return None
        return float(row[0])

    async def exercise_history(
        self, user_id: str, exercise_id: int
    ) -> List[Tuple[datetime.date, float]]:
        rows = await self.fetch_all(
            "SELECT w.date, MAX(ws.weight) FROM workout_set ws "
            "JOIN workout_exercise we ON ws.workout_exercise_id = we.workout_exercise_id "
            "JOIN workout w ON we.workout_id = w.workout_id "
            "WHERE we.exercise_id = ? AND w.user_id = ? AND ws.weight IS NOT NULL "
            "GROUP BY w.workout_id ORDER BY w.date, w.workout_id;",
            (exercise_id, user_id),
        )
        return [(parse_date(r[0]), float(r[1])) for r in rows]

    async def volume(self, workout_id: int) -> float:
        row = await self.fetch_one(
            "SELECT SUM(COALESCE(ws.reps, 0) * COALESCE(ws.weight, 0)) FROM workout_set ws "
            "JOIN workout_exercise we ON ws.workout_exercise_id = we.workout_exercise_id "
            "WHERE we.workout_id = ?;",
            (workout_id,),
        )
        return float(row[0]) if row and row[0] is not None else 0.0


class WorkoutExerciseRepository(AsyncBaseRepository):
    table = "workout_exercise"
    key = "workout_exercise_id"

    async def add(self, workout_id: int, exercise_id: int) -> int:
        return await self._insert({"workout_id": workout_id, "exercise_id": exercise_id})

    async def fetch_for_workout(self, workout_id: int) -> List[WorkoutExercise]:
        rows = await self.fetch_all(
            "SELECT * FROM workout_exercise WHERE workout_id = ? ORDER BY workout_exercise_id;",
            (workout_id,),
        )
        return [WorkoutExercise.from_row(r) for r in rows]

    async def delete_for_workout(self, workout_id: int) -> int:
        return await self.execute_update(
            "DELETE FROM workout_exercise WHERE workout_id = ?;", (workout_id,)
        )


class SetRepository(AsyncBaseRepository):
    table = "workout_set"
    key = "workout_set_id"

    async def add(self, workout_set: WorkoutSet) -> int:
        return await self._insert(
            {
                "workout_set_id": workout_set.workout_set_id,
                "workout_exercise_id": workout_set.workout_exercise_id,
                "set_number": workout_set.set_number,
                "reps": workout_set.reps,
                "weight": workout_set.weight,
            }
        )

    async def fetch_for_workout_exercise(self, workout_exercise_id: int) -> List[WorkoutSet]:
        rows = await self.fetch_all(
            "SELECT * FROM workout_set WHERE workout_exercise_id = ? ORDER BY set_number;",
            (workout_exercise_id,),
        )
        return [WorkoutSet.from_row(r) for r in rows]

    async def delete_for_workout_exercise(self, workout_exercise_id: int) -> int:
        return await self.execute_update(
            "DELETE FROM workout_set WHERE workout_exercise_id = ?;",
            (workout_exercise_id,),
        )


class GoalRepository(AsyncBaseRepository):
    table = "goal"
    key = "goal_id"

    async def add(self, goal: Goal, sync: bool = True) -> int:
        goal.validate()
        goal_id = await self._insert(goal.to_row())
        if sync:
            await self._mark(goal_id, SyncOperation.INSERT)
        return goal_id

    async def get(self, goal_id: int) -> Optional[Goal]:
        row = await self.fetch_one("SELECT * FROM goal WHERE goal_id = ?;", (goal_id,))
        return Goal.from_row(row) if row else None

    async def fetch_for_user(
        self,
        user_id: str,
        state: Optional[GoalState] = None,
        kind: Optional[GoalKind] = None,
        exercise_id: Optional[int] = None,
    ) -> List[Goal]:
        query = "SELECT * FROM goal WHERE user_id = ?"
        params: List[Any] = [user_id]
        if state is not None:
            query += " AND COALESCE(achieved, 0) = ?"
            params.append(int(state))
        if kind is not None:
            query += " AND type = ?"
            params.append(GoalKind(kind).value)
        if exercise_id is not None:
            query += " AND exercise_id = ?"
            params.append(exercise_id)
        rows = await self.fetch_all(query + " ORDER BY end_date, goal_id;", tuple(params))
        return [Goal.from_row(r) for r in rows]

    async def fetch_expiring(self, user_id: str, today: str, until: str) -> List[Goal]:
        rows = await self.fetch_all(
            "SELECT * FROM goal WHERE user_id = ? AND COALESCE(achieved, 0) = 0 "
            "AND end_date BETWEEN ? AND ? ORDER BY end_date, goal_id;",
            (user_id, today, until),
        )
        return [Goal.from_row(r) for r in rows]

    async def update_progress(self, goal_id: int, progress: float) -> bool:
        # Terminal goals keep their final progress.
        changed = await self.execute_update(
            "UPDATE goal SET current_progress = ? "
            "WHERE goal_id = ? AND COALESCE(achieved, 0) = 0 AND current_progress IS NOT ?;",
            (progress, goal_id, progress),
        )
        if changed:
            await self._mark(goal_id, SyncOperation.UPDATE)
        return bool(changed)

    async def set_state(
        self,
        goal_id: int,
        state: GoalState,
        achieved_date: Optional[str] = None,
        progress: Optional[float] = None,
    ) -> bool:
        """Move an Active goal to ``state``; returns False when it was terminal."""
        changed = await self.execute_update(
            "UPDATE goal SET achieved = ?, achieved_date = ?, "
            "current_progress = COALESCE(?, current_progress) "
            "WHERE goal_id = ? AND COALESCE(achieved, 0) = 0;",
            (int(state), achieved_date, progress, goal_id),
        )
        if changed:
            await self._mark(goal_id, SyncOperation.UPDATE)
        return bool(changed)

    async def update(self, goal: Goal) -> bool:
        goal.validate()
        row = goal.to_row()
        goal_id = row.pop("goal_id")
        assignments = ", ".join(f"{c} = ?" for c in row)
        changed = await self.execute_update(
            f"UPDATE goal SET {assignments} WHERE goal_id = ?;",
            tuple(row.values()) + (goal_id,),
        )
        if changed:
            await self._mark(goal_id, SyncOperation.UPDATE)
        return bool(changed)

    async def delete(self, goal_id: int) -> bool:
        changed = await self.execute_update("DELETE FROM goal WHERE goal_id = ?;", (goal_id,))
        if changed:
            await self._mark(goal_id, SyncOperation.DELETE)
        return bool(changed)


class DailyLogRepository(AsyncBaseRepository):
    """One row per user and day; a rest day may be upgraded, never downgraded."""

    table = "daily_log"
    key = "daily_log_id"

    async def get(self, user_id: str, date: str) -> Optional[DailyLog]:
        row = await self.fetch_one(
            "SELECT * FROM daily_log WHERE user_id = ? AND date = ?;", (user_id, date)
        )
        return DailyLog.from_row(row) if row else None

    async def record(
        self,
        user_id: str,
        date: str,
        activity: ActivityKind,
        notes: Optional[str] = None,
    ) -> Tuple[DailyLog, bool]:
        """Write the day's activity; returns the stored log and whether it changed."""
        activity = ActivityKind(activity)
        existing = await self.get(user_id, date)
        if existing is None:
            log = DailyLog(user_id=user_id, date=date, activity=activity, notes=notes)
            log.daily_log_id = await self._insert(
                {
                    "user_id": user_id,
                    "date": log.date.isoformat(),
                    "activity_type": activity.value,
                    "notes": notes,
                }
            )
            await self._mark(log.daily_log_id, SyncOperation.INSERT)
            return log, True
        if existing.activity == ActivityKind.REST and activity == ActivityKind.WORKOUT:
            existing.activity = activity
            existing.notes = notes if notes is not None else existing.notes
            await self.execute_update(
                "UPDATE daily_log SET activity_type = ?, notes = ? WHERE daily_log_id = ?;",
                (activity.value, existing.notes, existing.daily_log_id),
            )
            await self._mark(existing.daily_log_id, SyncOperation.UPDATE)
            return existing, True
        return existing, False

    async def fetch_range(
        self, user_id: str, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> List[DailyLog]:
        query = "SELECT * FROM daily_log WHERE user_id = ?"
        params: List[Any] = [user_id]
        if start_date:
            query += " AND date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        rows = await self.fetch_all(query + " ORDER BY date;", tuple(params))
        return [DailyLog.from_row(r) for r in rows]


class StreakRepository(AsyncBaseRepository):
    table = "streak"
    key = "user_id"

    async def get(self, user_id: str) -> Optional[Streak]:
        row = await self.fetch_one("SELECT * FROM streak WHERE user_id = ?;", (user_id,))
        return Streak.from_row(row) if row else None

    async def save(self, streak: Streak) -> None:
        await self._insert(streak.to_row())
        await self._mark(streak.user_id, SyncOperation.UPDATE)


class MilestoneRepository(AsyncBaseRepository):
    table = "milestone"
    key = "milestone_id"

    async def add(self, milestone: Milestone) -> int:
        milestone.milestone_id = await self._insert(
            {
                "milestone_id": milestone.milestone_id,
                "user_id": milestone.user_id,
                "type": milestone.kind.value,
                "exercise_id": milestone.exercise_id,
                "value": milestone.value,
                "date": milestone.date.isoformat(),
            }
        )
        await self._mark(milestone.milestone_id, SyncOperation.INSERT)
        return milestone.milestone_id

    async def fetch_for_user(
        self,
        user_id: str,
        kind: Optional[MilestoneKind] = None,
        exercise_id: Optional[int] = None,
    ) -> List[Milestone]:
        query = "SELECT * FROM milestone WHERE user_id = ?"
        params: List[Any] = [user_id]
        if kind is not None:
            query += " AND type = ?"
            params.append(MilestoneKind(kind).value)
        if exercise_id is not None:
            query += " AND exercise_id = ?"
            params.append(exercise_id)
        rows = await self.fetch_all(query + " ORDER BY date, milestone_id;", tuple(params))
        return [Milestone.from_row(r) for r in rows]


class NotificationRepository(AsyncBaseRepository):
    """Repository for in-app notifications."""

    table = "notification"
    key = "notification_id"

    async def add(self, user_id: str, kind: NotificationKind, message: str) -> int:
        notification_id = await self._insert(
            {
                "user_id": user_id,
                "type": NotificationKind(kind).value,
                "message": message,
                "timestamp": now_timestamp(),
                "is_read": 0,
            }
        )
        await self._mark(notification_id, SyncOperation.INSERT)
        return notification_id

    async def fetch_all(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        query = "SELECT * FROM notification WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        rows = await self.db.fetch_all(
            query + " ORDER BY timestamp DESC, notification_id DESC;", (user_id,)
        )
        return [Notification.from_row(r) for r in rows]

    async def mark_read(self, notification_id: int) -> bool:
        changed = await self.execute_update(
            "UPDATE notification SET is_read = 1 WHERE notification_id = ? AND is_read = 0;",
            (notification_id,),
        )
        if changed:
            await self._mark(notification_id, SyncOperation.UPDATE)
        return bool(changed)

    async def unread_count(self, user_id: str) -> int:
        row = await self.fetch_one(
            "SELECT COUNT(*) FROM notification WHERE user_id = ? AND is_read = 0;",
            (user_id,),
        )
        return int(row[0]) if row else 0


class ChangeQueueRepository(AsyncBaseRepository):
    """Storage for outbound change-queue entries."""

    table = "sync_queue"
    key = "id"

    async def upsert(
        self, table_name: str, record_id: str, operation: SyncOperation, timestamp: int
    ) -> None:
        # A re-marked entry is reset to pending with a strictly later timestamp.
        await self.execute(
            "INSERT INTO sync_queue (table_name, record_id, operation, timestamp, synced, retry_count, last_error) "
            "VALUES (?, ?, ?, ?, 0, 0, NULL) "
            "ON CONFLICT(table_name, record_id, operation) DO UPDATE SET "
            "timestamp = MAX(excluded.timestamp, sync_queue.timestamp + 1), "
            "synced = 0, retry_count = 0, last_error = NULL;",
            (table_name, record_id, SyncOperation(operation).value, timestamp),
        )

    async def get(
        self, table_name: str, record_id: str, operation: SyncOperation
    ) -> Optional[ChangeQueueEntry]:
        row = await self.fetch_one(
            "SELECT * FROM sync_queue WHERE table_name = ? AND record_id = ? AND operation = ?;",
            (table_name, str(record_id), SyncOperation(operation).value),
        )
        return ChangeQueueEntry.from_row(row) if row else None

    async def fetch_pending(self, limit: Optional[int] = None) -> List[ChangeQueueEntry]:
        query = "SELECT * FROM sync_queue WHERE synced = 0 ORDER BY timestamp, id"
        params: Tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        rows = await self.fetch_all(query + ";", params)
        return [ChangeQueueEntry.from_row(r) for r in rows]

    async def fetch_all_entries(self) -> List[ChangeQueueEntry]:
        rows = await self.fetch_all("SELECT * FROM sync_queue ORDER BY timestamp, id;")
        return [ChangeQueueEntry.from_row(r) for r in rows]

    async def count_pending(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) FROM sync_queue WHERE synced = 0;")
        return int(row[0]) if row else 0

    async def mark_synced(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        return await self.execute_update(
            f"UPDATE sync_queue SET synced = 1, last_error = NULL WHERE id IN ({placeholders});",
            tuple(ids),
        )

    async def mark_failed(self, entry_id: int, error: str) -> bool:
        changed = await self.execute_update(
            "UPDATE sync_queue SET retry_count = COALESCE(retry_count, 0) + 1, last_error = ? "
            "WHERE id = ?;",
            (error, entry_id),
        )
        return bool(changed)

    async def purge_synced(self, before_timestamp: int) -> int:
        return await self.execute_update(
            "DELETE FROM sync_queue WHERE synced = 1 AND timestamp < ?;",
            (before_timestamp,),
        )


def date_range(start: "datetime.date | str", end: "datetime.date | str") -> Tuple[str, str]:
    """Normalise an inclusive date range, rejecting inverted bounds."""
    start_s, end_s = normalise_date(start), normalise_date(end)
    if end_s < start_s:
        raise ValidationError(f"end date {end_s} is before start date {start_s}")
    return start_s, end_s
