import datetime
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from auth import AuthProvider, resolve_user
from change_queue import ChangeQueue
from db import (
    AsyncDatabase,
    ExerciseRepository,
    MilestoneRepository,
    SetRepository,
    WorkoutExerciseRepository,
    WorkoutRepository,
    date_range,
)
from errors import ValidationError
from goal_service import GoalService
from models import (
    Exercise,
    ExerciseEntry,
    Milestone,
    MilestoneKind,
    PersonalBest,
    SideEffectFailure,
    SyncOperation,
    Workout,
    WorkoutDetail,
    WorkoutExerciseDetail,
    WorkoutSaveResult,
    WorkoutSet,
    normalise_date,
)
from streak_service import StreakService

logger = logging.getLogger(__name__)

ExercisePayload = Union[ExerciseEntry, Mapping[str, Any]]


class WorkoutService:
    """Record, edit and remove completed workouts.

    A save writes the workout with all of its exercises and sets in one
    transaction. Personal bests, goal progress and the streak are derived
    after the commit; a failure there is logged and reported on the
    returned ``WorkoutSaveResult`` while the workout stays saved.
    """

    def __init__(
        self,
        db: AsyncDatabase,
        workouts: WorkoutRepository,
        workout_exercises: WorkoutExerciseRepository,
        sets: SetRepository,
        exercises: ExerciseRepository,
        milestones: MilestoneRepository,
        goals: GoalService,
        streaks: StreakService,
        queue: Optional[ChangeQueue] = None,
        auth: Optional[AuthProvider] = None,
    ) -> None:
        self.db = db
        self.workouts = workouts
        self.workout_exercises = workout_exercises
        self.sets = sets
        self.exercises = exercises
        self.milestones = milestones
        self.goals = goals
        self.streaks = streaks
        self.queue = queue
        self.auth = auth

    async def _validate(self, duration: Optional[int], entries: List[ExerciseEntry]) -> None:
        if duration is not None and duration < 0:
            raise ValidationError("duration cannot be negative")
        for entry in entries:
            if await self.exercises.get(entry.exercise_id) is None:
                raise ValidationError(f"unknown exercise {entry.exercise_id}")
            numbers = [s.set_number for s in entry.sets]
            if any(n <= 0 for n in numbers):
                raise ValidationError("set numbers must be positive")
            if len(set(numbers)) != len(numbers):
                raise ValidationError(
                    f"duplicate set number for exercise {entry.exercise_id}"
                )
            for s in entry.sets:
                if s.reps is not None and s.reps < 0:
                    raise ValidationError("reps cannot be negative")
                if s.weight is not None and s.weight < 0:
                    raise ValidationError("weight cannot be negative")

    async def _enqueue(self, workout_id: int, operation: SyncOperation) -> None:
        if self.queue is not None:
            await self.queue.enqueue("workout", str(workout_id), operation)

    @staticmethod
    def _failed(result: WorkoutSaveResult, step: str, exc: Exception) -> None:
        logger.warning(
            "%s update after saving workout %s failed: %s",
            step, result.workout_id, exc, exc_info=True,
        )
        result.failures.append(SideEffectFailure(step=step, error=str(exc)))

    async def save_complete_workout(
        self,
        user_id: Optional[str],
        date,
        duration: Optional[int] = None,
        notes: Optional[str] = None,
        exercises: Optional[Iterable[ExercisePayload]] = None,
    ) -> WorkoutSaveResult:
        user = resolve_user(self.auth, user_id)
        entries = [
            e if isinstance(e, ExerciseEntry) else ExerciseEntry.from_dict(e)
            for e in exercises or []
        ]
        await self._validate(duration, entries)
        workout = Workout(user_id=user, date=date, duration=duration, notes=notes)

        max_weights: Dict[int, float] = {}
        async with self.db.transaction():
            workout.workout_id = await self.workouts.create(workout, sync=False)
            for entry in entries:
                workout_exercise_id = await self.workout_exercises.add(
                    workout.workout_id, entry.exercise_id
                )
                for s in entry.sets:
                    await self.sets.add(
                        WorkoutSet(
                            workout_exercise_id=workout_exercise_id,
                            set_number=s.set_number,
                            reps=s.reps,
                            weight=s.weight,
                        )
                    )
                    if s.weight is not None and s.weight > max_weights.get(entry.exercise_id, 0):
                        max_weights[entry.exercise_id] = float(s.weight)
        logger.info(
            "saved workout %s for user %s on %s", workout.workout_id, user, workout.date
        )

        result = WorkoutSaveResult(workout_id=workout.workout_id)
        for exercise_id, new_max in max_weights.items():
            await self._personal_best(result, user, exercise_id, new_max)
        await self._enqueue(workout.workout_id, SyncOperation.INSERT)
        try:
            await self.goals.on_workout_saved(workout)
        except Exception as exc:
            self._failed(result, "goals", exc)
        try:
            await self.streaks.log_workout(workout.date, user_id=user)
        except Exception as exc:
            self._failed(result, "streak", exc)
        return result

    async def _personal_best(
        self, result: WorkoutSaveResult, user_id: str, exercise_id: int, new_max: float
    ) -> None:
        try:
            previous = await self.workouts.max_weight(
                user_id, exercise_id, before_workout_id=result.workout_id
            )
            if previous is not None and new_max <= previous:
                return
            await self.milestones.add(
                Milestone(
                    user_id=user_id,
                    kind=MilestoneKind.PERSONAL_BEST,
                    exercise_id=exercise_id,
                    value=new_max,
                    date=datetime.date.today(),
                )
            )
        except Exception as exc:
            self._failed(result, "personal_best", exc)
            return
        result.personal_bests.append(PersonalBest(exercise_id, new_max, previous))
        logger.info("new personal best for exercise %s: %s", exercise_id, new_max)
        try:
            await self.goals.on_personal_best(exercise_id, new_max, user_id=user_id)
        except Exception as exc:
            self._failed(result, "personal_best_goals", exc)

    async def delete_workout(self, workout_id: int) -> bool:
        """Remove a workout with its exercises and sets; False when unknown."""
        async with self.db.transaction():
            workout = await self.workouts.get(workout_id)
            if workout is None:
                return False
            for we in await self.workout_exercises.fetch_for_workout(workout_id):
                await self.sets.delete_for_workout_exercise(we.workout_exercise_id)
            await self.workout_exercises.delete_for_workout(workout_id)
            await self.workouts.delete(workout_id, sync=False)
        logger.info("deleted workout %s of user %s", workout_id, workout.user_id)
        await self._enqueue(workout_id, SyncOperation.DELETE)
        try:
            await self.goals.on_workout_deleted(workout.user_id)
        except Exception as exc:
            logger.warning("goal refresh after deleting workout %s failed: %s", workout_id, exc)
        return True

    async def update_workout(self, workout: Workout) -> bool:
        """Save edits to a workout; a new date is logged for the streak."""
        if workout.workout_id is None:
            raise ValidationError("cannot update a workout without an id")
        if workout.duration is not None and workout.duration < 0:
            raise ValidationError("duration cannot be negative")
        existing = await self.workouts.get(workout.workout_id)
        if existing is None:
            return False
        workout.user_id = existing.user_id
        if not await self.workouts.update(workout):
            return False
        try:
            await self.goals.on_workout_saved(workout)
        except Exception as exc:
            logger.warning("goal refresh after editing workout %s failed: %s", workout.workout_id, exc)
        if workout.date != existing.date:
            try:
                await self.streaks.log_workout(workout.date, user_id=workout.user_id)
            except Exception as exc:
                logger.warning(
                    "streak update after editing workout %s failed: %s", workout.workout_id, exc
                )
        return True

    # queries ------------------------------------------------------------

    async def get_workout(self, workout_id: int) -> Optional[Workout]:
        return await self.workouts.get(workout_id)

    async def get_workout_details(self, workout_id: int) -> Optional[WorkoutDetail]:
        workout = await self.workouts.get(workout_id)
        if workout is None:
            return None
        detail = WorkoutDetail(workout=workout)
        for we in await self.workout_exercises.fetch_for_workout(workout_id):
            exercise = await self.exercises.get(we.exercise_id)
            detail.exercises.append(
                WorkoutExerciseDetail(
                    workout_exercise_id=we.workout_exercise_id,
                    exercise=exercise or Exercise(name="unknown", exercise_id=we.exercise_id),
                    sets=await self.sets.fetch_for_workout_exercise(we.workout_exercise_id),
                )
            )
        return detail

    async def list_workouts(
        self, user_id: Optional[str] = None, start=None, end=None, limit: Optional[int] = None
    ) -> List[Workout]:
        user = resolve_user(self.auth, user_id)
        return await self.workouts.fetch_for_user(
            user,
            normalise_date(start) if start is not None else None,
            normalise_date(end) if end is not None else None,
            limit,
        )

    async def workouts_for_date(self, user_id: Optional[str], date) -> List[Workout]:
        user = resolve_user(self.auth, user_id)
        return await self.workouts.fetch_for_date(user, normalise_date(date))

    async def count_workouts_in_range(self, user_id: Optional[str], start, end) -> int:
        user = resolve_user(self.auth, user_id)
        start_s, end_s = date_range(start, end)
        return await self.workouts.count_in_range(user, start_s, end_s)

    async def personal_best_weight(self, user_id: Optional[str], exercise_id: int) -> Optional[float]:
        return await self.workouts.max_weight(resolve_user(self.auth, user_id), exercise_id)

    async def exercise_history(
        self, user_id: Optional[str], exercise_id: int
    ) -> List[Tuple[datetime.date, float]]:
        """Heaviest weight per workout for ``exercise_id``, oldest first."""
        return await self.workouts.exercise_history(resolve_user(self.auth, user_id), exercise_id)

    async def workout_volume(self, workout_id: int) -> float:
        return await self.workouts.volume(workout_id)

    async def list_exercises(self) -> List[Exercise]:
        return await self.exercises.fetch_all_exercises()

    async def exercises_by_muscle_group(self, muscle_group: str) -> List[Exercise]:
        return await self.exercises.fetch_by_muscle_group(muscle_group)

    async def muscle_groups(self) -> List[str]:
        return await self.exercises.muscle_groups()

    async def get_exercise(self, exercise_id: int) -> Optional[Exercise]:
        return await self.exercises.get(exercise_id)
