import os
import sys

import pytest
import yaml

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig, load_settings
from settings_schema import SettingsSchema, validate_settings


def test_defaults_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("FITNESS_DB_PATH", raising=False)
    settings = load_settings(str(tmp_path / "missing.yaml"))
    assert settings == SettingsSchema()
    assert settings.streak_milestones == [7, 30]
    assert settings.lock_timeout == 10.0


def test_yaml_values_and_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("FITNESS_DB_PATH", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.safe_dump({"db_path": "local.db", "log_level": "debug", "streak_milestones": [30, 7, 14]})
    )
    settings = load_settings(str(path), lock_timeout=2.5)
    assert settings.db_path == "local.db"
    assert settings.log_level == "DEBUG"
    assert settings.streak_milestones == [7, 14, 30]
    assert settings.lock_timeout == 2.5


def test_environment_sets_db_path(tmp_path, monkeypatch):
    monkeypatch.setenv("FITNESS_DB_PATH", str(tmp_path / "env.db"))
    assert load_settings(str(tmp_path / "none.yaml")).db_path == str(tmp_path / "env.db")
    explicit = load_settings(str(tmp_path / "none.yaml"), db_path="cli.db")
    assert explicit.db_path == "cli.db"


@pytest.mark.parametrize(
    "data",
    [
        {"lock_timeout": 0},
        {"log_level": "LOUD"},
        {"streak_milestones": [7, -1]},
        {"sync_retention_days": "soon"},
    ],
)
def test_invalid_settings(data):
    with pytest.raises(ValueError):
        validate_settings(data)


def test_yaml_must_be_mapping(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        YamlConfig(str(path)).load()


def test_save_round_trip(tmp_path):
    cfg = YamlConfig(str(tmp_path / "settings.yaml"))
    cfg.save({"db_path": "x.db", "expiring_goal_days": 5})
    assert cfg.load() == {"db_path": "x.db", "expiring_goal_days": 5}
