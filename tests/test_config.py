from pathlib import Path

import pytest

from fieldtrip.config import (
    FieldtripConfig,
    SourceEnum,
    load_config,
    load_config_or_default,
    resolve_config_path,
)


def test_defaults():
    cfg = FieldtripConfig()
    assert cfg.tracking.distance_interval_m == 50
    assert cfg.tracking.time_interval_s == 10
    assert cfg.tracking.geofence_radius_m == 50
    assert cfg.gps.source is SourceEnum.MOCK
    assert cfg.estimation.use_mock is True
    assert cfg.storage.storage_key == "fieldtrip:sessions"
    assert cfg.storage.db_path.as_posix() == "data/fieldtrip.db"


def test_yaml_loads_and_validates(tmp_path: Path):
    yml = tmp_path / "fieldtrip.yml"
    yml.write_text(
        """
logging:
  level: debug
gps:
  source: gpsd
  port: 2948
tracking:
  distance_interval_m: 25
storage:
  db_path: ~/trips.db
        """.strip(),
        encoding="utf-8",
    )
    cfg = load_config(yml)
    assert cfg.logging.level == "DEBUG"
    assert cfg.gps.source is SourceEnum.GPSD
    assert cfg.gps.port == 2948
    assert cfg.tracking.distance_interval_m == 25
    assert "~" not in cfg.storage.db_path.as_posix()


def test_empty_file_gives_defaults(tmp_path: Path):
    yml = tmp_path / "fieldtrip.yml"
    yml.write_text("", encoding="utf-8")
    assert load_config(yml) == FieldtripConfig()


@pytest.mark.parametrize(
    "body",
    [
        "logging:\n  level: chatty",
        "gps:\n  port: 0",
        "tracking:\n  geofence_radius_m: 0",
        "- just\n- a list",
    ],
)
def test_invalid_values_raise(tmp_path: Path, body: str):
    yml = tmp_path / "fieldtrip.yml"
    yml.write_text(body, encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(yml)


def test_api_key_from_env(monkeypatch):
    cfg = FieldtripConfig()
    monkeypatch.setenv("FIELDTRIP_MAPS_API_KEY", "secret")
    assert cfg.estimation.api_key == "secret"
    monkeypatch.delenv("FIELDTRIP_MAPS_API_KEY")
    assert cfg.estimation.api_key == ""


def test_resolve_prefers_cli_then_env(tmp_path: Path, monkeypatch):
    cli_path = tmp_path / "cli.yml"
    env_path = tmp_path / "env.yml"
    env_path.write_text("{}", encoding="utf-8")
    monkeypatch.setenv("FIELDTRIP_CONFIG", str(env_path))

    assert resolve_config_path(cli_path) == env_path.resolve()

    cli_path.write_text("{}", encoding="utf-8")
    assert resolve_config_path(cli_path) == cli_path.resolve()


def test_missing_config_falls_back_to_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FIELDTRIP_CONFIG", raising=False)
    if Path("/etc/fieldtrip/fieldtrip.yml").exists():
        pytest.skip("system config present")

    assert load_config_or_default(tmp_path / "missing.yml") == FieldtripConfig()
