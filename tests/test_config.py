"""Tests for taskboard.yaml loading and accessor construction."""

import pytest

from taskboard.config import Config, ConfigError
from taskboard.rest import RestTableAccessor
from taskboard.schema import BoardMode
from taskboard.store import SQLiteTableAccessor


def write(tmp_path, text):
    path = tmp_path / "taskboard.yaml"
    path.write_text(text)
    return str(path)


def test_defaults_when_file_missing(tmp_path):
    cfg = Config.load(str(tmp_path / "absent.yaml"))
    assert cfg.backend == "sqlite"
    assert cfg.mode == BoardMode.LANES
    assert cfg.default_columns == ["To Do", "In Progress", "Done"]
    assert "~" not in cfg.db_path


def test_values_and_unknown_keys(tmp_path, caplog):
    path = write(tmp_path, "board_mode: list\ndue_soon_days: 3\nmystery: 1\n")
    cfg = Config.load(path)
    assert cfg.mode == BoardMode.LIST
    assert cfg.due_soon_days == 3
    assert "mystery" in caplog.text


def test_env_var_points_at_config(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKBOARD_CONFIG", write(tmp_path, "task_table: tasks_v2\n"))
    assert Config.load().task_table == "tasks_v2"


@pytest.mark.parametrize("text", [
    "backend: [unclosed\n",
    "- just\n- a list\n",
    "backend: carrier-pigeon\n",
    "backend: rest\n",
])
def test_invalid_config_raises(tmp_path, text):
    with pytest.raises(ConfigError):
        Config.load(write(tmp_path, text))


def test_build_sqlite_accessor(tmp_path):
    cfg = Config(db_path=str(tmp_path / "b.db"))
    accessor = cfg.build_accessor()
    assert isinstance(accessor, SQLiteTableAccessor)
    assert accessor.db_path == str(tmp_path / "b.db")


def test_rest_accessor_needs_key(monkeypatch):
    cfg = Config(backend="rest", rest_url="https://db.example.com")
    monkeypatch.delenv("TASKBOARD_API_KEY", raising=False)
    with pytest.raises(ConfigError):
        cfg.build_accessor()

    monkeypatch.setenv("TASKBOARD_API_KEY", "service-key")
    accessor = cfg.build_accessor()
    assert isinstance(accessor, RestTableAccessor)
    assert accessor.session.headers["apikey"] == "service-key"
    assert accessor.base_url == "https://db.example.com"
