import logging
from typing import Optional

from account_service import AccountService
from auth import StaticAuthProvider
from change_queue import ChangeQueue
from db import (
    AsyncDatabase,
    BodyWeightRepository,
    ChangeQueueRepository,
    DailyLogRepository,
    ExerciseRepository,
    GoalRepository,
    MilestoneRepository,
    NotificationRepository,
    SetRepository,
    StreakRepository,
    UserRepository,
    WorkoutExerciseRepository,
    WorkoutRepository,
)
from goal_service import GoalService
from settings_schema import SettingsSchema
from streak_service import StreakService
from workout_service import WorkoutService

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT
    )


class FitnessApp:
    """Owns the single store handle and wires every repository and service to it."""

    def __init__(
        self,
        settings: Optional[SettingsSchema] = None,
        auth: Optional[StaticAuthProvider] = None,
    ) -> None:
        self.settings = settings or SettingsSchema()
        self.auth = auth or StaticAuthProvider()
        self.db = AsyncDatabase(self.settings.db_path, lock_timeout=self.settings.lock_timeout)

        self.queue = ChangeQueue(
            ChangeQueueRepository(self.db), retention_days=self.settings.sync_retention_days
        )
        self.user_repo = UserRepository(self.db, self.queue)
        self.body_weight_repo = BodyWeightRepository(self.db, self.queue)
        self.exercise_repo = ExerciseRepository(self.db)
        self.workout_repo = WorkoutRepository(self.db, self.queue)
        self.workout_exercise_repo = WorkoutExerciseRepository(self.db)
        self.set_repo = SetRepository(self.db)
        self.goal_repo = GoalRepository(self.db, self.queue)
        self.daily_log_repo = DailyLogRepository(self.db, self.queue)
        self.streak_repo = StreakRepository(self.db, self.queue)
        self.milestone_repo = MilestoneRepository(self.db, self.queue)
        self.notification_repo = NotificationRepository(self.db, self.queue)

        self.goals = GoalService(
            self.db,
            self.goal_repo,
            self.workout_repo,
            self.body_weight_repo,
            self.milestone_repo,
            self.notification_repo,
            auth=self.auth,
            expiring_days=self.settings.expiring_goal_days,
        )
        self.streaks = StreakService(
            self.db,
            self.daily_log_repo,
            self.streak_repo,
            self.milestone_repo,
            self.notification_repo,
            workouts=self.workout_repo,
            auth=self.auth,
            milestone_lengths=self.settings.streak_milestones,
        )
        self.ledger = WorkoutService(
            self.db,
            self.workout_repo,
            self.workout_exercise_repo,
            self.set_repo,
            self.exercise_repo,
            self.milestone_repo,
            self.goals,
            self.streaks,
            queue=self.queue,
            auth=self.auth,
        )
        self.accounts = AccountService(self.db, self.user_repo, auth=self.auth)

    @classmethod
    async def open(
        cls,
        settings: Optional[SettingsSchema] = None,
        auth: Optional[StaticAuthProvider] = None,
    ) -> "FitnessApp":
        app = cls(settings, auth)
        await app.db.connect()
        return app

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> "FitnessApp":
        await self.db.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
