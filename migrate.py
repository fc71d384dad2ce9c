"""Additive schema migrations for databases written by older app versions.

Every step looks at the live schema and does nothing when its change is
already present, so the whole list runs on every open. Steps run in their
own transaction; a failing step is rolled back, logged and skipped and the
remaining steps still run.
"""

import logging
import sqlite3
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from errors import MigrationError

logger = logging.getLogger(__name__)

TableDefinitions = Dict[str, Tuple[str, List[str]]]


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[sqlite3.Connection, TableDefinitions], bool]


@dataclass
class MigrationResult:
    version: int
    description: str
    status: str
    error: Optional[str] = None


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
    )
    return cur.fetchone() is not None


def table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    cur = conn.execute(f"PRAGMA table_info({table});")
    return [row[1] for row in cur.fetchall()]


def table_sql(conn: sqlite3.Connection, table: str) -> str:
    cur = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?;", (table,)
    )
    row = cur.fetchone()
    return row[0] if row and row[0] else ""


def row_count(conn: sqlite3.Connection, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table};").fetchone()[0]


def add_column(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    declaration: str,
    backfill: Optional[str] = None,
) -> bool:
    """Add ``column`` when missing, then run ``backfill`` (an UPDATE) once."""
    if not table_exists(conn, table) or column in table_columns(conn, table):
        return False
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration};")
    if backfill:
        conn.execute(backfill)
    return True


def rebuild_table(
    conn: sqlite3.Connection,
    table: str,
    sql: str,
    derived: Optional[Dict[str, str]] = None,
) -> None:
    """Recreate ``table`` from ``sql`` and copy every existing row into it.

    Columns the old table lacks are filled from ``derived`` (SQL
    expressions over the old columns) or left to their defaults. The old
    table is only dropped once the new one holds the same number of rows.
    """
    derived = derived or {}
    conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
    before = row_count(conn, table)
    old_cols = table_columns(conn, table)
    conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
    conn.execute(sql)
    new_cols = table_columns(conn, table)

    common = [c for c in old_cols if c in new_cols]
    missing = [c for c in new_cols if c not in old_cols and c in derived]
    targets = ", ".join(common + missing)
    sources = ", ".join(common + [derived[c] for c in missing])
    conn.execute(f"INSERT INTO {table} ({targets}) SELECT {sources} FROM {table}_old;")

    after = row_count(conn, table)
    if after != before:
        raise MigrationError(
            f"{table} rebuild copied {after} of {before} rows",
            {"table": table, "before": before, "after": after},
        )
    conn.execute(f"DROP TABLE {table}_old;")


_GOAL_STARTING_WEIGHT = "CASE WHEN type = 'WeightTarget' THEN current_progress END"
_GOAL_ACHIEVED_DATE = "CASE WHEN achieved = 1 THEN end_date END"


def _daily_log_notes(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    return add_column(conn, "daily_log", "notes", "TEXT")


def _streak_last_workout(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    return add_column(
        conn,
        "streak",
        "last_workout_date",
        "DATE",
        "UPDATE streak SET last_workout_date = ("
        "SELECT MAX(d.date) FROM daily_log d "
        "WHERE d.user_id = streak.user_id AND d.activity_type = 'workout');",
    )


def _goal_starting_weight(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    return add_column(
        conn,
        "goal",
        "starting_weight",
        "REAL",
        f"UPDATE goal SET starting_weight = {_GOAL_STARTING_WEIGHT};",
    )


def _goal_achieved_date(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    return add_column(
        conn,
        "goal",
        "achieved_date",
        "DATE",
        f"UPDATE goal SET achieved_date = {_GOAL_ACHIEVED_DATE};",
    )


def _goal_weight_target_kind(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    # CHECK constraints cannot be altered in place.
    if not table_exists(conn, "goal") or "WeightTarget" in table_sql(conn, "goal"):
        return False
    rebuild_table(
        conn,
        "goal",
        tables["goal"][0],
        {
            "starting_weight": _GOAL_STARTING_WEIGHT,
            "achieved_date": _GOAL_ACHIEVED_DATE,
        },
    )
    return True


def _sync_queue_retry_columns(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    added = add_column(conn, "sync_queue", "retry_count", "INTEGER DEFAULT 0")
    return add_column(conn, "sync_queue", "last_error", "TEXT") or added


def _workout_set_unique_number(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    if not table_exists(conn, "workout_set") or "UNIQUE" in table_sql(conn, "workout_set").upper():
        return False
    rebuild_table(conn, "workout_set", tables["workout_set"][0])
    return True


def _day_granular_dates(conn: sqlite3.Connection, tables: TableDefinitions) -> bool:
    changed = False
    for table, columns in (
        ("workout", ("date",)),
        ("daily_log", ("date",)),
        ("goal", ("start_date", "end_date")),
        ("streak", ("last_activity_date",)),
    ):
        if not table_exists(conn, table):
            continue
        for column in columns:
            cur = conn.execute(
                f"UPDATE {table} SET {column} = substr({column}, 1, 10) "
                f"WHERE length({column}) > 10;"
            )
            changed = changed or cur.rowcount > 0
    return changed


MIGRATIONS: List[Migration] = [
    Migration(1, "add daily_log.notes", _daily_log_notes),
    Migration(2, "add streak.last_workout_date", _streak_last_workout),
    Migration(3, "add goal.starting_weight", _goal_starting_weight),
    Migration(4, "add goal.achieved_date", _goal_achieved_date),
    Migration(5, "allow WeightTarget goals", _goal_weight_target_kind),
    Migration(6, "add sync_queue retry columns", _sync_queue_retry_columns),
    Migration(7, "unique set numbers per workout exercise", _workout_set_unique_number),
    Migration(8, "store dates at day granularity", _day_granular_dates),
]


def run_migrations(
    conn: sqlite3.Connection,
    tables: TableDefinitions,
    migrations: Optional[List[Migration]] = None,
) -> List[MigrationResult]:
    """Apply ``migrations`` in order on an autocommit connection."""
    results: List[MigrationResult] = []
    conn.execute("PRAGMA foreign_keys=off;")
    conn.execute("PRAGMA legacy_alter_table=on;")
    try:
        for step in migrations if migrations is not None else MIGRATIONS:
            try:
                conn.execute("BEGIN;")
                changed = step.apply(conn, tables)
                conn.execute("COMMIT;")
            except Exception as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                logger.warning(
                    "migration %s (%s) failed and was skipped: %s",
                    step.version,
                    step.description,
                    exc,
                )
                results.append(
                    MigrationResult(step.version, step.description, "failed", str(exc))
                )
                continue
            if changed:
                logger.info("applied migration %s: %s", step.version, step.description)
            results.append(
                MigrationResult(
                    step.version, step.description, "applied" if changed else "skipped"
                )
            )

        reached = 0
        for result in results:
            if result.status == "failed":
                break
            reached = result.version
        current = conn.execute("PRAGMA user_version;").fetchone()[0]
        if reached > current:
            conn.execute(f"PRAGMA user_version = {int(reached)};")
    finally:
        conn.execute("PRAGMA legacy_alter_table=off;")
        conn.execute("PRAGMA foreign_keys=on;")
    return results


def migrate(db_path: str = "fitness.db") -> List[MigrationResult]:
    from db import Database

    return Database(db_path).migration_results


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    path = sys.argv[1] if len(sys.argv) > 1 else 'fitness.db'
    for r in migrate(path):
        print(f"{r.version:>3} {r.status:<8} {r.description}" + (f" ({r.error})" if r.error else ""))
