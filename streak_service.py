import datetime
import logging
from typing import Iterable, List, Optional

from auth import AuthProvider, resolve_user
from db import (
    AsyncDatabase,
    DailyLogRepository,
    MilestoneRepository,
    NotificationRepository,
    StreakRepository,
    WorkoutRepository,
    date_range,
)
from models import (
    ActivityKind,
    DailyCheck,
    DailyLog,
    Milestone,
    MilestoneKind,
    NotificationKind,
    Streak,
    StreakUpdate,
    parse_date,
)

logger = logging.getLogger(__name__)


class StreakService:
    """Keep the per-user daily activity log and the consecutive-day streak.

    A day counts toward the streak when it holds either a workout or a rest
    log. Logs arriving in date order update the streak incrementally; a log
    older than the last activity rebuilds it from the stored history.
    """

    def __init__(
        self,
        db: AsyncDatabase,
        daily_logs: DailyLogRepository,
        streaks: StreakRepository,
        milestones: MilestoneRepository,
        notifications: NotificationRepository,
        workouts: Optional[WorkoutRepository] = None,
        auth: Optional[AuthProvider] = None,
        milestone_lengths: Iterable[int] = (7, 30),
    ) -> None:
        self.db = db
        self.daily_logs = daily_logs
        self.streaks = streaks
        self.milestones = milestones
        self.notifications = notifications
        self.workouts = workouts
        self.auth = auth
        self.milestone_lengths = sorted(set(milestone_lengths))

    async def log_workout(
        self, date, user_id: Optional[str] = None, notes: Optional[str] = None
    ) -> StreakUpdate:
        return await self._log(date, ActivityKind.WORKOUT, user_id, notes)

    async def log_rest(
        self, date, user_id: Optional[str] = None, notes: Optional[str] = None
    ) -> StreakUpdate:
        return await self._log(date, ActivityKind.REST, user_id, notes)

    async def _log(
        self,
        date,
        activity: ActivityKind,
        user_id: Optional[str],
        notes: Optional[str],
    ) -> StreakUpdate:
        user = resolve_user(self.auth, user_id)
        day = parse_date(date)
        async with self.db.transaction():
            _log, changed = await self.daily_logs.record(user, day.isoformat(), activity, notes)
            streak = await self.streaks.get(user) or Streak(user_id=user)
            before_current = streak.current_streak
            before_longest = streak.longest_streak
            if streak.last_activity_date is not None and day < streak.last_activity_date:
                await self._rebuild(streak)
            else:
                self._advance(streak, day)
                if activity == ActivityKind.WORKOUT and (
                    streak.last_workout_date is None or day > streak.last_workout_date
                ):
                    streak.last_workout_date = day
            streak.longest_streak = max(streak.longest_streak, streak.current_streak)
            await self.streaks.save(streak)
            if (
                streak.current_streak != before_current
                and streak.current_streak in self.milestone_lengths
            ):
                await self._record_milestone(user, streak.current_streak)
        new_longest = streak.longest_streak > before_longest
        if new_longest:
            logger.info("user %s set a new longest streak of %d days", user, streak.longest_streak)
        return StreakUpdate(streak=streak, log_changed=changed, new_longest=new_longest)

    @staticmethod
    def _advance(streak: Streak, day: datetime.date) -> None:
        last = streak.last_activity_date
        if last is None:
            streak.current_streak = 1
        elif day == last:
            streak.current_streak = max(streak.current_streak, 1)
        elif (day - last).days == 1:
            streak.current_streak += 1
        else:
            streak.current_streak = 1
        streak.last_activity_date = day

    async def _rebuild(self, streak: Streak) -> None:
        logs = await self.daily_logs.fetch_range(streak.user_id)
        run = longest = 0
        previous: Optional[datetime.date] = None
        for day in sorted({log.date for log in logs}):
            run = run + 1 if previous is not None and (day - previous).days == 1 else 1
            longest = max(longest, run)
            previous = day
        streak.current_streak = run
        streak.longest_streak = max(streak.longest_streak, longest)
        streak.last_activity_date = previous
        workout_days = [log.date for log in logs if log.activity == ActivityKind.WORKOUT]
        if workout_days:
            streak.last_workout_date = max(workout_days)

    async def _record_milestone(self, user_id: str, length: int) -> None:
        await self.milestones.add(
            Milestone(
                user_id=user_id,
                kind=MilestoneKind.LONGEST_STREAK,
                value=float(length),
                date=datetime.date.today(),
            )
        )
        await self.notifications.add(
            user_id, NotificationKind.NEW_STREAK, f"{length}-day streak achieved! Keep it up!"
        )
        logger.info("user %s reached a %d-day streak", user_id, length)

    async def get_streak(self, user_id: Optional[str] = None) -> Streak:
        user = resolve_user(self.auth, user_id)
        return await self.streaks.get(user) or Streak(user_id=user)

    async def daily_log_history(
        self, start, end, user_id: Optional[str] = None
    ) -> List[DailyLog]:
        """Return the user's daily logs between ``start`` and ``end``, newest first."""
        user = resolve_user(self.auth, user_id)
        start_s, end_s = date_range(start, end)
        logs = await self.daily_logs.fetch_range(user, start_s, end_s)
        return list(reversed(logs))

    async def perform_daily_check(self, today=None, user_id: Optional[str] = None) -> DailyCheck:
        """Break a lapsed streak, or flag that today's activity keeps it alive."""
        user = resolve_user(self.auth, user_id)
        today = parse_date(today) if today is not None else datetime.date.today()
        streak = await self.streaks.get(user)
        if streak is None or streak.last_activity_date is None:
            return DailyCheck(streak=streak or Streak(user_id=user))
        gap = (today - streak.last_activity_date).days
        if gap > 1 and streak.current_streak > 0:
            async with self.db.transaction():
                streak.current_streak = 0
                await self.streaks.save(streak)
            logger.info("streak of user %s lapsed after %d days without activity", user, gap)
            return DailyCheck(streak=streak, reset=True)
        if gap == 1 and streak.current_streak > 0:
            await self.notifications.add(
                user,
                NotificationKind.NEW_STREAK,
                f"Don't break your {streak.current_streak}-day streak - log a workout today!",
            )
            return DailyCheck(streak=streak, reminder_due=True)
        return DailyCheck(streak=streak)

    async def regenerate_daily_logs(self, start, end, user_id: Optional[str] = None) -> int:
        """Ensure every saved workout in range has a workout log; returns logs written."""
        if self.workouts is None:
            raise RuntimeError("regenerating daily logs needs a workout repository")
        user = resolve_user(self.auth, user_id)
        start_s, end_s = date_range(start, end)
        days = await self.workouts.fetch_dates(user, start_s, end_s)
        written = 0
        async with self.db.transaction():
            for day in days:
                _log, changed = await self.daily_logs.record(
                    user, day.isoformat(), ActivityKind.WORKOUT
                )
                written += int(changed)
            if written:
                streak = await self.streaks.get(user) or Streak(user_id=user)
                await self._rebuild(streak)
                await self.streaks.save(streak)
        if written:
            logger.info("regenerated %d daily logs for user %s", written, user)
        return written
