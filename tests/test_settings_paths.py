import json
from pathlib import Path

import pytest

from core import settings
from core.settings import OutboxSettings
from services.errors import ConfigError
from storage.config import load_settings, save_settings, update_settings


def test_linux_data_dir_with_xdg():
    env = {"XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env=env,
        home=Path("/home/test"),
    )
    assert result == Path("/tmp/xdg") / settings.APP_NAME


def test_linux_data_dir_default_home():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={},
        home=Path("/home/test"),
    )
    assert result == Path("/home/test/.local/share") / settings.APP_NAME


def test_macos_data_dir():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="darwin",
        env={},
        home=Path("/Users/test"),
    )
    assert result == Path("/Users/test/Library/Application Support") / settings.APP_NAME


def test_windows_data_dir_appdata():
    env = {"APPDATA": "C:/Users/test/AppData/Roaming"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="win32",
        env=env,
        home=Path("C:/Users/test"),
    )
    assert result == Path(env["APPDATA"]) / settings.APP_NAME


def test_env_override_wins():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={"OUTBOX_DATA_DIR": "/srv/outbox", "XDG_DATA_HOME": "/tmp/xdg"},
    )
    assert result == Path("/srv/outbox")


def test_runtime_paths_inside_data_dir():
    assert settings.DB_PATH.parent == settings.DATA_DIR
    assert settings.CONFIG_PATH.parent == settings.DATA_DIR
    assert settings.LOG_PATH.parent.parent == settings.DATA_DIR


def test_outbox_defaults():
    assert settings.OUTBOX == OutboxSettings(
        max_attempts=5,
        base_delay_ms=1000,
        max_delay_ms=60000,
        tick_interval_ms=5000,
        partition_workers=1,
    )


@pytest.mark.parametrize(
    "changes",
    [
        {"max_attempts": 0},
        {"base_delay_ms": -1},
        {"base_delay_ms": 0},
        {"base_delay_ms": 5000, "max_delay_ms": 1000},
        {"tick_interval_ms": 0},
        {"partition_workers": 0},
    ],
)
def test_outbox_settings_validation(changes):
    with pytest.raises(ValueError):
        OutboxSettings(**changes)


def test_load_settings_missing_file_gives_defaults(tmp_path):
    assert load_settings(tmp_path / "config.json") == settings.OUTBOX


def test_load_settings_ignores_unreadable_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_settings(path) == settings.OUTBOX


def test_load_settings_applies_known_keys(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_attempts": 3, "tick_interval_ms": 250, "theme": "dark"}), encoding="utf-8")
    loaded = load_settings(path)
    assert loaded.max_attempts == 3
    assert loaded.tick_interval_ms == 250
    assert loaded.base_delay_ms == 1000


def test_load_settings_rejects_bad_values(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_attempts": "three"}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(path)

    path.write_text(json.dumps({"max_attempts": 0}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(path)


def test_save_and_update_settings(tmp_path):
    path = tmp_path / "nested" / "config.json"
    save_settings(OutboxSettings(max_attempts=7), path)
    assert json.loads(path.read_text(encoding="utf-8"))["max_attempts"] == 7
    assert not path.with_suffix(".tmp").exists()

    updated = update_settings(path, base_delay_ms=250)
    assert updated.max_attempts == 7
    assert updated.base_delay_ms == 250
    assert load_settings(path) == updated

    with pytest.raises(ConfigError):
        update_settings(path, colour="red")
