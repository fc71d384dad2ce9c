from typing import List

from pydantic import BaseModel, ValidationError, field_validator


class SettingsSchema(BaseModel):
    db_path: str = "fitness.db"
    log_level: str = "INFO"
    lock_timeout: float = 10.0
    streak_milestones: List[int] = [7, 30]
    sync_retention_days: int = 7
    expiring_goal_days: int = 3

    @field_validator("lock_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("lock_timeout must be positive")
        return value

    @field_validator("streak_milestones")
    @classmethod
    def _positive_milestones(cls, value: List[int]) -> List[int]:
        if any(v <= 0 for v in value):
            raise ValueError("streak milestones must be positive")
        return sorted(set(value))

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value}")
        return level


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
