import os
import yaml

from settings_schema import SettingsSchema, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Load and save settings to a YAML file."""

    def __init__(self, path: str = "settings.yaml") -> None:
        self.path = path

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)


def load_settings(path: str = "settings.yaml", **overrides) -> SettingsSchema:
    """Return validated settings from ``path`` with ``overrides`` applied.

    ``FITNESS_DB_PATH`` in the environment replaces ``db_path`` when no
    override is given.
    """
    data = YamlConfig(path).load()
    env_db = os.environ.get("FITNESS_DB_PATH")
    if env_db and "db_path" not in overrides:
        data["db_path"] = env_db
    data.update(overrides)
    return validate_settings(data)
