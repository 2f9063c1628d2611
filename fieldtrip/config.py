from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .infrastructure.storage.session_store import DEFAULT_STORAGE_KEY


class SourceEnum(str, Enum):
    MOCK = "mock"
    GPSD = "gpsd"


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    format: str = Field("%(asctime)s | %(name)s | %(levelname)s | %(message)s")
    datefmt: str = Field("%Y-%m-%d %H:%M:%S")

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level


class TrackingConfig(BaseModel):
    """Delivery cadence and timer settings."""

    distance_interval_m: float = Field(50.0, ge=0)  # Update every 50 meters
    time_interval_s: float = Field(10.0, ge=0)  # Update every 10 seconds
    geofence_radius_m: float = Field(50.0, gt=0)  # Destination arrival radius
    tick_interval_s: float = Field(1.0, gt=0, le=60)
    locate_destination: bool = Field(False)


class GPSConfig(BaseModel):
    """Position source configuration."""

    source: SourceEnum = Field(SourceEnum.MOCK)
    host: str = Field("localhost")
    port: int = Field(2947, ge=1, le=65535)
    timeout: float = Field(10.0, ge=1.0)
    reconnect_delay: float = Field(5.0, ge=0.0)
    max_reconnect_attempts: int = Field(0, ge=0)  # 0 = infinite
    mock_lat: float = Field(55.6761, ge=-90, le=90)  # Copenhagen default
    mock_lon: float = Field(12.5683, ge=-180, le=180)
    mock_speed_mps: float = Field(1.4, gt=0)
    mock_interval_s: float = Field(1.0, ge=0)


class EstimationConfig(BaseModel):
    """Route estimation configuration."""

    use_mock: bool = Field(True)  # Set to false when you have an API key
    api_key_env: str = Field("FIELDTRIP_MAPS_API_KEY")
    distance_matrix_url: str = Field("https://maps.googleapis.com/maps/api/distancematrix/json")
    geocoding_url: str = Field("https://maps.googleapis.com/maps/api/geocode/json")
    timeout: float = Field(15.0, gt=0)
    mock_delay_s: float = Field(1.0, ge=0)

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


class StorageConfig(BaseModel):
    db_path: Path = Field(Path("data/fieldtrip.db"))
    storage_key: str = Field(DEFAULT_STORAGE_KEY, min_length=1)

    @field_validator("db_path")
    @classmethod
    def _expand_db_path(cls, value: Path) -> Path:
        return value.expanduser()


class FieldtripConfig(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    gps: GPSConfig = Field(default_factory=GPSConfig)
    estimation: EstimationConfig = Field(default_factory=EstimationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(path: Path) -> FieldtripConfig:
    with Path(path).expanduser().open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    try:
        return FieldtripConfig.model_validate(raw)
    except ValidationError as exc:  # pragma: no cover - formatting
        raise ValueError(str(exc)) from exc


def load_config_or_default(path: Path | None) -> FieldtripConfig:
    """Load config from the resolved path, or defaults when no file exists."""
    resolved = resolve_config_path(path)
    if resolved.exists():
        return load_config(resolved)
    return FieldtripConfig()


def resolve_config_path(cli_path: Path | None) -> Path:
    """Resolve config path by priority: CLI, env, /etc/fieldtrip, repo configs."""
    candidates: list[Path] = []
    if cli_path:
        p = Path(cli_path).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    env = os.environ.get("FIELDTRIP_CONFIG")
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    for p in [Path("/etc/fieldtrip/fieldtrip.yml"), Path("configs/fieldtrip.yml")]:
        if p.exists():
            return p.resolve()
        candidates.append(p)
    # Fallback to first candidate even if not exists to surface errors consistently
    return candidates[0] if candidates else Path("configs/fieldtrip.yml").resolve()
