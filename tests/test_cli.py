import asyncio
import io
import os
import sqlite3
import sys
import tempfile
import unittest
from contextlib import redirect_stdout

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from app import FitnessApp
from auth import StaticAuthProvider
from cli import backup_db, main, migrate_db, restore_db
from settings_schema import SettingsSchema


class CLITest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "test_cli.db")
        self.yaml_path = os.path.join(self.tmp.name, "test_cli.yaml")
        self.backup_path = os.path.join(self.tmp.name, "backup.db")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _run(self, *argv: str) -> str:
        out = io.StringIO()
        with redirect_stdout(out):
            main(["--yaml", self.yaml_path, *argv])
        return out.getvalue()

    def _seed(self) -> None:
        async def seed():
            app = await FitnessApp.open(SettingsSchema(db_path=self.db_path), StaticAuthProvider())
            try:
                await app.accounts.sign_in("u1", "Ada", "Lovelace")
                await app.goals.create_frequency_goal(
                    3, "2024-01-31", start_date="2024-01-01"
                )
                await app.ledger.save_complete_workout("u1", "2024-01-02")
            finally:
                await app.close()

        asyncio.run(seed())

    def test_migrate_reports_steps(self) -> None:
        output = self._run("migrate", "--db", self.db_path)
        self.assertIn("skipped", output)
        self.assertEqual(migrate_db(self.db_path), 0)

    def test_migrate_exits_on_failure(self) -> None:
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "CREATE TABLE workout_set (workout_set_id INTEGER PRIMARY KEY, "
            "workout_exercise_id INTEGER NOT NULL, set_number INT NOT NULL, reps INT, weight REAL)"
        )
        conn.execute("INSERT INTO workout_set VALUES (1, 1, 1, 5, 50)")
        conn.execute("INSERT INTO workout_set VALUES (2, 1, 1, 5, 55)")
        conn.commit()
        conn.close()
        with self.assertRaises(SystemExit):
            self._run("migrate", "--db", self.db_path)

    def test_pending_and_purge(self) -> None:
        self._seed()
        output = self._run("pending", "--db", self.db_path)
        self.assertIn("workout/1", output)
        self.assertIn("pending", output)
        output = self._run("pending", "--db", self.db_path, "--limit", "1")
        self.assertIn("1 pending", output)
        output = self._run("purge", "--db", self.db_path, "--days", "0")
        self.assertIn("Removed 0 synced entries", output)

    def test_maintenance_expires_goals(self) -> None:
        self._seed()
        output = self._run("maintenance", "--db", self.db_path, "--user", "u1", "--today", "2024-02-05")
        self.assertIn("expired: 1", output)
        self.assertIn("(reset)", output)

    def test_backup_restore(self) -> None:
        self._seed()
        self._run("backup", "--db", self.db_path, "--out", self.backup_path)
        self.assertTrue(os.path.exists(self.backup_path))
        os.remove(self.db_path)
        restore_db(self.backup_path, self.db_path)
        conn = sqlite3.connect(self.db_path)
        self.assertEqual(conn.execute("SELECT COUNT(*) FROM workout").fetchone()[0], 1)
        conn.close()
        backup_db(self.db_path, self.backup_path)


if __name__ == "__main__":
    unittest.main()
