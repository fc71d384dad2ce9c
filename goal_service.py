import datetime
import logging
from typing import List, Optional

from auth import AuthProvider, resolve_user
from db import (
    AsyncDatabase,
    BodyWeightRepository,
    GoalRepository,
    MilestoneRepository,
    NotificationRepository,
    WorkoutRepository,
)
from errors import ValidationError
from models import (
    Goal,
    GoalKind,
    GoalState,
    MaintenanceResult,
    Milestone,
    MilestoneKind,
    NotificationKind,
    SideEffectFailure,
    Workout,
    parse_date,
)

logger = logging.getLogger(__name__)

_GOAL_LABELS = {
    GoalKind.EXERCISE_TARGET: "strength",
    GoalKind.WORKOUT_FREQUENCY: "workout frequency",
    GoalKind.WEIGHT_TARGET: "weight",
}


def _today(today=None) -> datetime.date:
    return parse_date(today) if today is not None else datetime.date.today()


class GoalService:
    """Track goal progress and drive the Active -> Achieved / Expired lifecycle.

    Achieved and Expired are terminal. Every state change re-reads the goal
    inside its transaction, so hooks that fire again after a goal finished
    change nothing.
    """

    def __init__(
        self,
        db: AsyncDatabase,
        goals: GoalRepository,
        workouts: WorkoutRepository,
        body_weights: BodyWeightRepository,
        milestones: MilestoneRepository,
        notifications: NotificationRepository,
        auth: Optional[AuthProvider] = None,
        expiring_days: int = 3,
    ) -> None:
        self.db = db
        self.goals = goals
        self.workouts = workouts
        self.body_weights = body_weights
        self.milestones = milestones
        self.notifications = notifications
        self.auth = auth
        self.expiring_days = expiring_days

    # creation -----------------------------------------------------------

    async def create_goal(self, goal: Goal) -> int:
        goal.user_id = resolve_user(self.auth, goal.user_id or None)
        goal.validate()
        goal_id = await self.goals.add(goal)
        goal.goal_id = goal_id
        logger.info("created %s goal %s for user %s", goal.kind.value, goal_id, goal.user_id)
        return goal_id

    async def create_exercise_goal(
        self,
        exercise_id: int,
        target_weight: float,
        end_date,
        current_weight: Optional[float] = None,
        start_date=None,
        user_id: Optional[str] = None,
    ) -> int:
        user = resolve_user(self.auth, user_id)
        if current_weight is None:
            current_weight = await self.workouts.max_weight(user, exercise_id) or 0.0
        return await self.create_goal(
            Goal(
                user_id=user,
                kind=GoalKind.EXERCISE_TARGET,
                exercise_id=exercise_id,
                target_value=target_weight,
                start_date=_today(start_date),
                end_date=end_date,
                current_progress=current_weight,
            )
        )

    async def create_frequency_goal(
        self,
        target_workouts: int,
        end_date,
        start_date=None,
        user_id: Optional[str] = None,
    ) -> int:
        user = resolve_user(self.auth, user_id)
        goal = Goal(
            user_id=user,
            kind=GoalKind.WORKOUT_FREQUENCY,
            target_value=float(target_workouts),
            start_date=_today(start_date),
            end_date=end_date,
        )
        goal.validate()
        goal.current_progress = float(
            await self.workouts.count_in_range(
                user, goal.start_date.isoformat(), goal.end_date.isoformat()
            )
        )
        return await self.create_goal(goal)

    async def create_weight_goal(
        self,
        current_weight: float,
        target_weight: float,
        end_date,
        start_date=None,
        user_id: Optional[str] = None,
    ) -> int:
        user = resolve_user(self.auth, user_id)
        if current_weight is None or current_weight <= 0:
            raise ValidationError("weight must be positive")
        goal = Goal(
            user_id=user,
            kind=GoalKind.WEIGHT_TARGET,
            target_value=target_weight,
            start_date=_today(start_date),
            end_date=end_date,
            current_progress=current_weight,
            starting_value=current_weight,
        )
        goal.validate()
        async with self.db.transaction():
            await self.body_weights.log(user, current_weight)
            return await self.create_goal(goal)

    # evaluation ---------------------------------------------------------

    @staticmethod
    def is_satisfied(goal: Goal, progress: float) -> bool:
        target = goal.target_value
        if not target:
            # Missing or zero targets count as met.
            return progress >= 0
        if goal.kind == GoalKind.WEIGHT_TARGET:
            start = goal.starting_value
            if start is None or start == target:
                return progress == target
            return progress <= target if target < start else progress >= target
        return progress >= target

    @staticmethod
    def progress_fraction(goal: Goal) -> float:
        """Share of the goal completed, between 0.0 and 1.0."""
        target = goal.target_value
        progress = goal.current_progress
        if not target:
            return 1.0
        if goal.kind != GoalKind.WEIGHT_TARGET:
            return max(0.0, min(progress / target, 1.0))
        start = goal.starting_value if goal.starting_value is not None else progress
        if target < start:
            if progress <= target:
                return 1.0
            return max(0.0, min((start - progress) / (start - target), 1.0))
        if target > start:
            if progress >= target:
                return 1.0
            return max(0.0, min((progress - start) / (target - start), 1.0))
        if progress == target:
            return 1.0
        # Maintenance goals: within 5% of the target scales linearly to zero.
        deviation = abs(progress - target) / target
        return max(0.0, min(1.0 - deviation * 20, 1.0))

    async def _apply_progress(self, goal_id: int, progress: float, today=None) -> bool:
        """Store ``progress`` and achieve the goal when it meets its target.

        Returns True only when this call moved the goal to Achieved.
        """
        day = _today(today)
        async with self.db.transaction():
            goal = await self.goals.get(goal_id)
            if goal is None or not goal.is_active:
                return False
            await self.goals.update_progress(goal_id, progress)
            if not self.is_satisfied(goal, progress):
                return False
            await self.goals.set_state(
                goal_id, GoalState.ACHIEVED, achieved_date=day.isoformat(), progress=progress
            )
            await self.milestones.add(
                Milestone(
                    user_id=goal.user_id,
                    kind=MilestoneKind.GOAL_ACHIEVED,
                    exercise_id=goal.exercise_id,
                    value=goal.target_value,
                    date=day,
                )
            )
            await self.notifications.add(
                goal.user_id,
                NotificationKind.GOAL_PROGRESS,
                f"Congratulations! You've reached your {_GOAL_LABELS[goal.kind]} goal!",
            )
        logger.info("goal %s of user %s achieved", goal_id, goal.user_id)
        return True

    async def _recompute(self, goal: Goal) -> Optional[float]:
        if goal.kind == GoalKind.WORKOUT_FREQUENCY:
            count = await self.workouts.count_in_range(
                goal.user_id, goal.start_date.isoformat(), goal.end_date.isoformat()
            )
            return float(count)
        if goal.kind == GoalKind.EXERCISE_TARGET:
            return await self.workouts.max_weight(goal.user_id, goal.exercise_id)
        latest = await self.body_weights.fetch_latest(goal.user_id)
        return latest.weight_kg if latest is not None else None

    async def _refresh_frequency_goals(self, user_id: str) -> List[int]:
        achieved: List[int] = []
        for goal in await self.goals.fetch_for_user(
            user_id, state=GoalState.ACTIVE, kind=GoalKind.WORKOUT_FREQUENCY
        ):
            progress = await self._recompute(goal)
            if await self._apply_progress(goal.goal_id, progress):
                achieved.append(goal.goal_id)
        return achieved

    # hooks --------------------------------------------------------------

    async def on_workout_saved(self, workout: Workout) -> List[int]:
        """Re-count Active frequency goals of the workout's owner."""
        return await self._refresh_frequency_goals(workout.user_id)

    async def on_workout_deleted(self, user_id: str) -> List[int]:
        """Re-count frequency goals and drop strength progress back to the remaining best."""
        achieved = await self._refresh_frequency_goals(user_id)
        for goal in await self.goals.fetch_for_user(
            user_id, state=GoalState.ACTIVE, kind=GoalKind.EXERCISE_TARGET
        ):
            best = await self._recompute(goal)
            if await self._apply_progress(goal.goal_id, best if best is not None else 0.0):
                achieved.append(goal.goal_id)
        return achieved

    async def on_personal_best(
        self, exercise_id: int, new_max: float, user_id: Optional[str] = None
    ) -> List[int]:
        user = resolve_user(self.auth, user_id)
        achieved: List[int] = []
        for goal in await self.goals.fetch_for_user(
            user, state=GoalState.ACTIVE, kind=GoalKind.EXERCISE_TARGET, exercise_id=exercise_id
        ):
            if await self._apply_progress(goal.goal_id, new_max):
                achieved.append(goal.goal_id)
        return achieved

    async def perform_daily_maintenance(
        self, user_id: Optional[str] = None, today=None
    ) -> MaintenanceResult:
        """Expire overdue goals and refresh progress of the rest."""
        user = resolve_user(self.auth, user_id)
        day = _today(today)
        result = MaintenanceResult()
        for goal in await self.goals.fetch_for_user(user, state=GoalState.ACTIVE):
            try:
                if day > goal.end_date:
                    if await self.goals.set_state(goal.goal_id, GoalState.EXPIRED):
                        logger.info("goal %s of user %s expired", goal.goal_id, user)
                        result.expired.append(goal.goal_id)
                    continue
                progress = await self._recompute(goal)
                if progress is None:
                    continue
                if await self._apply_progress(goal.goal_id, progress, day):
                    result.achieved.append(goal.goal_id)
            except Exception as exc:
                logger.warning("maintenance of goal %s failed: %s", goal.goal_id, exc)
                result.failures.append(SideEffectFailure(f"goal {goal.goal_id}", str(exc)))
        return result

    async def log_body_weight(
        self, weight: float, measured_at: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[int]:
        """Record a measurement and re-evaluate Active weight goals."""
        user = resolve_user(self.auth, user_id)
        await self.body_weights.log(user, weight, measured_at)
        latest = await self.body_weights.fetch_latest(user)
        achieved: List[int] = []
        for goal in await self.goals.fetch_for_user(
            user, state=GoalState.ACTIVE, kind=GoalKind.WEIGHT_TARGET
        ):
            if await self._apply_progress(goal.goal_id, latest.weight_kg):
                achieved.append(goal.goal_id)
        return achieved

    # queries and edits --------------------------------------------------

    async def get_goal(self, goal_id: int) -> Optional[Goal]:
        return await self.goals.get(goal_id)

    async def list_goals(self, user_id: Optional[str] = None) -> List[Goal]:
        return await self.goals.fetch_for_user(resolve_user(self.auth, user_id))

    async def active_goals(self, user_id: Optional[str] = None) -> List[Goal]:
        return await self.goals.fetch_for_user(
            resolve_user(self.auth, user_id), state=GoalState.ACTIVE
        )

    async def completed_goals(self, user_id: Optional[str] = None) -> List[Goal]:
        return await self.goals.fetch_for_user(
            resolve_user(self.auth, user_id), state=GoalState.ACHIEVED
        )

    async def expiring_goals(
        self, within_days: Optional[int] = None, today=None, user_id: Optional[str] = None
    ) -> List[Goal]:
        user = resolve_user(self.auth, user_id)
        day = _today(today)
        days = self.expiring_days if within_days is None else within_days
        until = day + datetime.timedelta(days=days)
        return await self.goals.fetch_expiring(user, day.isoformat(), until.isoformat())

    async def near_completion_goals(
        self, ratio: float = 0.9, user_id: Optional[str] = None
    ) -> List[Goal]:
        return [g for g in await self.active_goals(user_id) if self.progress_fraction(g) >= ratio]

    async def update_goal(self, goal: Goal) -> bool:
        """Save edits to an Active goal and re-evaluate it against the new target."""
        if goal.goal_id is None:
            raise ValidationError("cannot update a goal without an id")
        existing = await self.goals.get(goal.goal_id)
        if existing is None:
            return False
        if not existing.is_active:
            raise ValidationError(f"goal {goal.goal_id} is {existing.state.name.lower()}")
        goal.state = GoalState.ACTIVE
        if not await self.goals.update(goal):
            return False
        progress = await self._recompute(goal)
        await self._apply_progress(
            goal.goal_id, progress if progress is not None else goal.current_progress
        )
        return True

    async def delete_goal(self, goal_id: int) -> bool:
        deleted = await self.goals.delete(goal_id)
        if deleted:
            logger.info("deleted goal %s", goal_id)
        return deleted
