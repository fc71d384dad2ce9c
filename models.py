"""Typed records for every table plus the payload and result types used by
the services. Rows are converted at the storage boundary only."""

import datetime
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, List, Mapping, Optional

from errors import ValidationError


def normalise_date(value: "datetime.date | datetime.datetime | str") -> str:
    """Return the canonical ``YYYY-MM-DD`` form of ``value``."""
    return parse_date(value).isoformat()


def parse_date(value: "datetime.date | datetime.datetime | str") -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"invalid date: {value!r}") from exc
    raise ValidationError(f"invalid date: {value!r}")


def _optional_date(value: Any) -> Optional[datetime.date]:
    if value is None or value == "":
        return None
    return parse_date(value)


def _iso(value: Optional[datetime.date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _col(row: Mapping[str, Any], key: str, default: Any = None) -> Any:
    # Tolerates columns a skipped migration never added.
    return row[key] if key in row.keys() else default


def now_timestamp() -> str:
    return datetime.datetime.now().isoformat()


class GoalKind(str, Enum):
    EXERCISE_TARGET = "ExerciseTarget"
    WORKOUT_FREQUENCY = "WorkoutFrequency"
    WEIGHT_TARGET = "WeightTarget"


class GoalState(IntEnum):
    ACTIVE = 0
    ACHIEVED = 1
    EXPIRED = 2


class ActivityKind(str, Enum):
    WORKOUT = "workout"
    REST = "rest"


class MilestoneKind(str, Enum):
    PERSONAL_BEST = "PersonalBest"
    LONGEST_STREAK = "LongestStreak"
    GOAL_ACHIEVED = "GoalAchieved"


class NotificationKind(str, Enum):
    GOAL_PROGRESS = "GoalProgress"
    NEW_STREAK = "NewStreak"
    MILESTONE = "Milestone"


class SyncOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class User:
    user_id: str
    first_name: str
    last_name: str
    height_cm: Optional[float] = None
    registration_date: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            user_id=row["user_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            height_cm=row["height_cm"],
            registration_date=row["registration_date"],
            last_login=row["last_login"],
        )

    def to_row(self) -> dict:
        return {
            "user_id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "height_cm": self.height_cm,
            "registration_date": self.registration_date or now_timestamp(),
            "last_login": self.last_login,
        }


@dataclass
class BodyWeight:
    user_id: str
    weight_kg: float
    measured_at: str
    metric_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BodyWeight":
        return cls(
            metric_id=row["metric_id"],
            user_id=row["user_id"],
            weight_kg=float(row["weight_kg"]),
            measured_at=row["measured_at"],
        )


@dataclass
class Exercise:
    name: str
    muscle_group: Optional[str] = None
    description: Optional[str] = None
    exercise_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Exercise":
        return cls(
            exercise_id=row["exercise_id"],
            name=row["name"],
            muscle_group=row["muscle_group"],
            description=row["description"],
        )


@dataclass
class Workout:
    user_id: str
    date: datetime.date
    duration: Optional[int] = None
    notes: Optional[str] = None
    workout_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.date = parse_date(self.date)
        # A zero duration means "not recorded".
        if self.duration == 0:
            self.duration = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Workout":
        return cls(
            workout_id=row["workout_id"],
            user_id=row["user_id"],
            date=row["date"],
            duration=row["duration"],
            notes=row["notes"],
        )

    def to_row(self) -> dict:
        return {
            "workout_id": self.workout_id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "duration": self.duration,
            "notes": self.notes,
        }


@dataclass
class WorkoutExercise:
    workout_id: int
    exercise_id: int
    workout_exercise_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkoutExercise":
        return cls(
            workout_exercise_id=row["workout_exercise_id"],
            workout_id=row["workout_id"],
            exercise_id=row["exercise_id"],
        )


@dataclass
class WorkoutSet:
    workout_exercise_id: int
    set_number: int
    reps: Optional[int] = None
    weight: Optional[float] = None
    workout_set_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkoutSet":
        weight = row["weight"]
        return cls(
            workout_set_id=row["workout_set_id"],
            workout_exercise_id=row["workout_exercise_id"],
            set_number=row["set_number"],
            reps=row["reps"],
            weight=float(weight) if weight is not None else None,
        )


@dataclass
class Goal:
    """A user goal. ``state`` is stored in the legacy ``achieved`` column."""

    user_id: str
    kind: GoalKind
    start_date: datetime.date
    end_date: datetime.date
    exercise_id: Optional[int] = None
    target_value: Optional[float] = None
    state: GoalState = GoalState.ACTIVE
    current_progress: float = 0.0
    starting_value: Optional[float] = None
    achieved_date: Optional[datetime.date] = None
    goal_id: Optional[int] = None

    def __post_init__(self) -> None:
        try:
            self.kind = GoalKind(self.kind)
            self.state = GoalState(self.state)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        self.start_date = parse_date(self.start_date)
        self.end_date = parse_date(self.end_date)
        self.achieved_date = _optional_date(self.achieved_date)

    @property
    def is_active(self) -> bool:
        return self.state == GoalState.ACTIVE

    def validate(self) -> None:
        """Reject kind/exercise combinations the schema would refuse."""
        if self.kind == GoalKind.EXERCISE_TARGET and self.exercise_id is None:
            raise ValidationError("ExerciseTarget goals need an exercise id")
        if self.kind != GoalKind.EXERCISE_TARGET and self.exercise_id is not None:
            raise ValidationError(f"{self.kind.value} goals cannot reference an exercise")
        if self.end_date < self.start_date:
            raise ValidationError("goal end date is before its start date")
        if self.target_value is not None and self.target_value < 0:
            raise ValidationError("goal target cannot be negative")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Goal":
        target = row["target_value"]
        starting = _col(row, "starting_weight")
        return cls(
            goal_id=row["goal_id"],
            user_id=row["user_id"],
            kind=row["type"],
            exercise_id=row["exercise_id"],
            target_value=float(target) if target is not None else None,
            start_date=row["start_date"],
            end_date=row["end_date"],
            state=int(row["achieved"] or 0),
            current_progress=float(row["current_progress"] or 0.0),
            starting_value=float(starting) if starting is not None else None,
            achieved_date=_col(row, "achieved_date"),
        )

    def to_row(self) -> dict:
        return {
            "goal_id": self.goal_id,
            "user_id": self.user_id,
            "type": self.kind.value,
            "exercise_id": self.exercise_id,
            "target_value": self.target_value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "achieved": int(self.state),
            "current_progress": self.current_progress,
            "starting_weight": self.starting_value,
            "achieved_date": _iso(self.achieved_date),
        }


@dataclass
class DailyLog:
    user_id: str
    date: datetime.date
    activity: ActivityKind
    notes: Optional[str] = None
    daily_log_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.date = parse_date(self.date)
        self.activity = ActivityKind(self.activity)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DailyLog":
        return cls(
            daily_log_id=row["daily_log_id"],
            user_id=row["user_id"],
            date=row["date"],
            activity=row["activity_type"],
            notes=_col(row, "notes"),
        )


@dataclass
class Streak:
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: Optional[datetime.date] = None
    last_workout_date: Optional[datetime.date] = None

    def __post_init__(self) -> None:
        self.last_activity_date = _optional_date(self.last_activity_date)
        self.last_workout_date = _optional_date(self.last_workout_date)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Streak":
        return cls(
            user_id=row["user_id"],
            current_streak=int(row["current_streak"] or 0),
            longest_streak=int(row["longest_streak"] or 0),
            last_activity_date=row["last_activity_date"],
            last_workout_date=_col(row, "last_workout_date"),
        )

    def to_row(self) -> dict:
        return {
            "user_id": self.user_id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_activity_date": _iso(self.last_activity_date),
            "last_workout_date": _iso(self.last_workout_date),
        }


@dataclass
class Milestone:
    user_id: str
    kind: MilestoneKind
    value: Optional[float]
    date: datetime.date
    exercise_id: Optional[int] = None
    milestone_id: Optional[int] = None

    def __post_init__(self) -> None:
        self.kind = MilestoneKind(self.kind)
        self.date = parse_date(self.date)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Milestone":
        value = row["value"]
        return cls(
            milestone_id=row["milestone_id"],
            user_id=row["user_id"],
            kind=row["type"],
            exercise_id=row["exercise_id"],
            value=float(value) if value is not None else None,
            date=row["date"],
        )


@dataclass
class Notification:
    user_id: str
    kind: NotificationKind
    message: str
    timestamp: str
    is_read: bool = False
    notification_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        return cls(
            notification_id=row["notification_id"],
            user_id=row["user_id"],
            kind=NotificationKind(row["type"]),
            message=row["message"],
            timestamp=row["timestamp"],
            is_read=bool(row["is_read"]),
        )


@dataclass
class ChangeQueueEntry:
    table_name: str
    record_id: str
    operation: SyncOperation
    timestamp: int
    synced: bool = False
    retry_count: int = 0
    last_error: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ChangeQueueEntry":
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            record_id=row["record_id"],
            operation=SyncOperation(row["operation"]),
            timestamp=int(row["timestamp"] or 0),
            synced=bool(row["synced"]),
            retry_count=int(_col(row, "retry_count", 0) or 0),
            last_error=_col(row, "last_error"),
        )


@dataclass
class SetEntry:
    set_number: int
    reps: Optional[int] = None
    weight: Optional[float] = None


@dataclass
class ExerciseEntry:
    exercise_id: int
    sets: List[SetEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExerciseEntry":
        return cls(
            exercise_id=int(data["exercise_id"]),
            sets=[
                SetEntry(
                    set_number=int(s["set_number"]),
                    reps=s.get("reps"),
                    weight=s.get("weight"),
                )
                for s in data.get("sets", [])
            ],
        )


@dataclass
class PersonalBest:
    exercise_id: int
    weight: float
    previous: Optional[float] = None


@dataclass
class SideEffectFailure:
    """A derived update that failed after the primary write committed."""

    step: str
    error: str


@dataclass
class WorkoutSaveResult:
    workout_id: int
    personal_bests: List[PersonalBest] = field(default_factory=list)
    failures: List[SideEffectFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class WorkoutExerciseDetail:
    workout_exercise_id: int
    exercise: Exercise
    sets: List[WorkoutSet] = field(default_factory=list)


@dataclass
class WorkoutDetail:
    workout: Workout
    exercises: List[WorkoutExerciseDetail] = field(default_factory=list)


@dataclass
class StreakUpdate:
    streak: Streak
    log_changed: bool
    new_longest: bool = False


@dataclass
class DailyCheck:
    streak: Streak
    reset: bool = False
    reminder_due: bool = False


@dataclass
class MaintenanceResult:
    achieved: List[int] = field(default_factory=list)
    expired: List[int] = field(default_factory=list)
    failures: List[SideEffectFailure] = field(default_factory=list)
