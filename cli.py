import argparse
import asyncio
import datetime
import shutil
from typing import List, Optional

from app import FitnessApp, configure_logging
from config import load_settings
from db import Database


def migrate_db(db_path: str) -> int:
    """Open (and thereby migrate) ``db_path``; returns the number of failed steps."""
    database = Database(db_path)
    failed = 0
    for r in database.migration_results:
        line = f"{r.version:>3} {r.status:<8} {r.description}"
        if r.error:
            line += f" ({r.error})"
            failed += 1
        print(line)
    for table, columns in database.schema_drift().items():
        print(f"    {table} is missing columns: {', '.join(columns)}")
    return failed


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


async def show_pending(app: FitnessApp, limit: Optional[int] = None) -> None:
    entries = await app.queue.pending(limit)
    for e in entries:
        stamp = datetime.datetime.fromtimestamp(e.timestamp / 1000).isoformat(timespec="seconds")
        retry = f" retries={e.retry_count}" if e.retry_count else ""
        print(f"{e.id:>5} {stamp} {e.operation.value:<6} {e.table_name}/{e.record_id}{retry}")
    print(f"{len(entries)} pending")


async def purge_queue(app: FitnessApp, days: Optional[int] = None) -> None:
    removed = await app.queue.purge_synced(days)
    print(f"Removed {removed} synced entries")


async def run_maintenance(app: FitnessApp, user_id: str, today: Optional[str] = None) -> None:
    result = await app.goals.perform_daily_maintenance(user_id, today)
    check = await app.streaks.perform_daily_check(today, user_id=user_id)
    print(f"Goals achieved: {len(result.achieved)}, expired: {len(result.expired)}")
    for failure in result.failures:
        print(f"  {failure.step} failed: {failure.error}")
    status = "reset" if check.reset else "reminder due" if check.reminder_due else "ok"
    print(f"Streak: {check.streak.current_streak} days ({status})")


async def _with_app(db_path: str, yaml_path: str, action, *args) -> None:
    settings = load_settings(yaml_path, db_path=db_path)
    async with FitnessApp(settings) as app:
        await action(app, *args)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Fitness tracker utility commands")
    parser.add_argument("--yaml", default="settings.yaml")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    mig = sub.add_parser("migrate")
    mig.add_argument("--db", default="fitness.db")

    pend = sub.add_parser("pending")
    pend.add_argument("--db", default="fitness.db")
    pend.add_argument("--limit", type=int, default=None)

    purge = sub.add_parser("purge")
    purge.add_argument("--db", default="fitness.db")
    purge.add_argument("--days", type=int, default=None)

    maint = sub.add_parser("maintenance")
    maint.add_argument("--db", default="fitness.db")
    maint.add_argument("--user", required=True)
    maint.add_argument("--today", default=None)

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default="fitness.db")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default="fitness.db")

    args = parser.parse_args(argv)
    configure_logging(args.log_level or load_settings(args.yaml).log_level)

    if args.cmd == "migrate":
        if migrate_db(args.db):
            raise SystemExit(1)
    elif args.cmd == "pending":
        asyncio.run(_with_app(args.db, args.yaml, show_pending, args.limit))
    elif args.cmd == "purge":
        asyncio.run(_with_app(args.db, args.yaml, purge_queue, args.days))
    elif args.cmd == "maintenance":
        asyncio.run(_with_app(args.db, args.yaml, run_maintenance, args.user, args.today))
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)


if __name__ == "__main__":
    main()
