import os
import sqlite3
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import DEFAULT_EXERCISES, Database
from migrate import MIGRATIONS, Migration, run_migrations, table_columns


LEGACY_SCHEMA = """
CREATE TABLE users (
    user_id TEXT PRIMARY KEY,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    height_cm REAL CHECK (height_cm > 0),
    registration_date DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_login DATETIME
);
CREATE TABLE exercise (
    exercise_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    muscle_group TEXT,
    description TEXT
);
CREATE TABLE workout (
    workout_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    date DATETIME NOT NULL,
    duration INT,
    notes TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);
CREATE TABLE workout_exercise (
    workout_exercise_id INTEGER PRIMARY KEY AUTOINCREMENT,
    workout_id INTEGER NOT NULL,
    exercise_id INTEGER NOT NULL,
    FOREIGN KEY (workout_id) REFERENCES workout(workout_id),
    FOREIGN KEY (exercise_id) REFERENCES exercise(exercise_id)
);
CREATE TABLE workout_set (
    workout_set_id INTEGER PRIMARY KEY AUTOINCREMENT,
    workout_exercise_id INTEGER NOT NULL,
    set_number INT NOT NULL,
    reps INT,
    weight REAL,
    FOREIGN KEY (workout_exercise_id) REFERENCES workout_exercise(workout_exercise_id)
);
CREATE TABLE goal (
    goal_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('ExerciseTarget','WorkoutFrequency')),
    exercise_id INTEGER,
    target_value REAL,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    achieved BOOLEAN DEFAULT FALSE,
    current_progress REAL DEFAULT 0,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (exercise_id) REFERENCES exercise(exercise_id),
    CHECK (
        (type = 'ExerciseTarget' AND exercise_id IS NOT NULL) OR
        (type = 'WorkoutFrequency' AND exercise_id IS NULL)
    )
);
CREATE TABLE daily_log (
    daily_log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    date DATE NOT NULL,
    activity_type TEXT NOT NULL CHECK (activity_type IN ('workout','rest')),
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    UNIQUE (user_id, date)
);
CREATE TABLE streak (
    user_id TEXT PRIMARY KEY,
    current_streak INT DEFAULT 0,
    longest_streak INT DEFAULT 0,
    last_activity_date DATE,
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);
CREATE TABLE sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    synced BOOLEAN DEFAULT FALSE,
    UNIQUE(table_name, record_id, operation)
);
"""


def _legacy_db(path, duplicate_sets: bool = False) -> None:
    conn = sqlite3.connect(str(path))
    conn.executescript(LEGACY_SCHEMA)
    conn.execute("INSERT INTO users (user_id, first_name, last_name) VALUES ('u1', 'Ada', 'L');")
    conn.execute("INSERT INTO exercise (name, muscle_group) VALUES ('Squat', 'Legs');")
    conn.execute(
        "INSERT INTO workout (user_id, date) VALUES ('u1', '2024-01-02T00:00:00.000');"
    )
    conn.execute("INSERT INTO workout_exercise (workout_id, exercise_id) VALUES (1, 1);")
    conn.execute("INSERT INTO workout_set (workout_exercise_id, set_number, reps, weight) VALUES (1, 1, 5, 100);")
    conn.execute(
        "INSERT INTO workout_set (workout_exercise_id, set_number, reps, weight) VALUES (1, ?, 5, 105);",
        (1 if duplicate_sets else 2,),
    )
    conn.execute(
        "INSERT INTO goal (user_id, type, exercise_id, target_value, start_date, end_date, achieved, current_progress) "
        "VALUES ('u1', 'ExerciseTarget', 1, 100, '2024-01-01', '2024-02-01', 1, 105);"
    )
    conn.execute(
        "INSERT INTO goal (user_id, type, target_value, start_date, end_date, achieved, current_progress) "
        "VALUES ('u1', 'WorkoutFrequency', 10, '2024-01-01', '2024-03-01', 0, 1);"
    )
    conn.execute("INSERT INTO daily_log (user_id, date, activity_type) VALUES ('u1', '2024-01-01', 'rest');")
    conn.execute("INSERT INTO daily_log (user_id, date, activity_type) VALUES ('u1', '2024-01-02', 'workout');")
    conn.execute(
        "INSERT INTO streak (user_id, current_streak, longest_streak, last_activity_date) "
        "VALUES ('u1', 2, 2, '2024-01-02');"
    )
    conn.execute(
        "INSERT INTO sync_queue (table_name, record_id, operation, timestamp) VALUES ('workout', '1', 'INSERT', 1704153600000);"
    )
    conn.commit()
    conn.close()


class TestSchemaMigration:
    def test_fresh_database(self, tmp_path):
        db_file = tmp_path / "fresh.db"
        database = Database(str(db_file))

        assert all(r.status == "skipped" for r in database.migration_results)
        assert database.schema_drift() == {}
        conn = sqlite3.connect(str(db_file))
        assert conn.execute("PRAGMA user_version").fetchone()[0] == MIGRATIONS[-1].version
        count = conn.execute("SELECT COUNT(*) FROM exercise").fetchone()[0]
        assert count == len(DEFAULT_EXERCISES) == 22
        conn.close()

    def test_upgrades_legacy_database(self, tmp_path):
        db_file = tmp_path / "legacy.db"
        _legacy_db(db_file)

        database = Database(str(db_file))

        statuses = {r.version: r.status for r in database.migration_results}
        assert "failed" not in statuses.values()
        assert statuses[5] == "applied"
        assert database.schema_drift() == {}

        conn = sqlite3.connect(str(db_file))
        conn.row_factory = sqlite3.Row
        goals = conn.execute("SELECT * FROM goal ORDER BY goal_id").fetchall()
        assert len(goals) == 2
        assert goals[0]["achieved_date"] == "2024-02-01"
        assert goals[1]["achieved_date"] is None
        assert goals[0]["current_progress"] == 105
        conn.execute(
            "INSERT INTO goal (user_id, type, target_value, start_date, end_date, starting_weight) "
            "VALUES ('u1', 'WeightTarget', 70, '2024-01-01', '2024-06-01', 80);"
        )

        streak = conn.execute("SELECT * FROM streak WHERE user_id = 'u1'").fetchone()
        assert streak["last_workout_date"] == "2024-01-02"
        assert "notes" in table_columns(conn, "daily_log")
        assert "retry_count" in table_columns(conn, "sync_queue")
        assert conn.execute("SELECT date FROM workout").fetchone()[0] == "2024-01-02"
        assert conn.execute("SELECT COUNT(*) FROM workout_set").fetchone()[0] == 2
        leftovers = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE '%_old'"
        ).fetchall()
        assert leftovers == []
        # Legacy databases already hold exercises, so no reseeding happens.
        assert conn.execute("SELECT COUNT(*) FROM exercise").fetchone()[0] == 1
        conn.close()

    def test_reopen_is_idempotent(self, tmp_path):
        db_file = tmp_path / "legacy.db"
        _legacy_db(db_file)
        Database(str(db_file))

        again = Database(str(db_file))

        assert all(r.status == "skipped" for r in again.migration_results)
        conn = sqlite3.connect(str(db_file))
        assert conn.execute("SELECT COUNT(*) FROM goal").fetchone()[0] == 2
        conn.close()

    def test_failed_rebuild_is_absorbed(self, tmp_path):
        db_file = tmp_path / "dupes.db"
        _legacy_db(db_file, duplicate_sets=True)

        database = Database(str(db_file))

        statuses = {r.version: r.status for r in database.migration_results}
        assert statuses[7] == "failed"
        assert statuses[8] == "applied"
        conn = sqlite3.connect(str(db_file))
        assert conn.execute("SELECT COUNT(*) FROM workout_set").fetchone()[0] == 2
        assert conn.execute("PRAGMA user_version").fetchone()[0] == 6
        assert conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='workout_set_old'"
        ).fetchone() is None
        conn.close()

    def test_drops_existing_backup_table(self, tmp_path):
        db_file = tmp_path / "test.db"
        _legacy_db(db_file)
        conn = sqlite3.connect(str(db_file))
        conn.execute("CREATE TABLE goal_old (goal_id INTEGER)")
        conn.commit()
        conn.close()

        Database(str(db_file))

        conn = sqlite3.connect(str(db_file))
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='goal_old'"
        )
        assert cur.fetchone() is None
        assert "starting_weight" in table_columns(conn, "goal")
        conn.close()

    def test_failing_step_rolls_back(self, tmp_path):
        db_file = tmp_path / "steps.db"
        Database(str(db_file))

        def broken(conn, tables):
            conn.execute("ALTER TABLE workout ADD COLUMN rating INTEGER;")
            raise RuntimeError("boom")

        conn = sqlite3.connect(str(db_file), isolation_level=None)
        results = run_migrations(
            conn,
            Database._TABLE_DEFINITIONS,
            [Migration(100, "broken", broken), Migration(101, "noop", lambda c, t: False)],
        )
        assert [r.status for r in results] == ["failed", "skipped"]
        assert results[0].error == "boom"
        assert "rating" not in table_columns(conn, "workout")
        conn.close()
