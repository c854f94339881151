import json
import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError, field_validator, model_validator


class WindowConfig(BaseModel):
    minimum_lookahead_minutes: int = Field(default=180, ge=1)
    max_lookahead_no_next_minutes: int = Field(default=240, ge=1)
    default_lookback_minutes: int = Field(default=180, ge=1)

    @model_validator(mode="after")
    def _lookahead_cap_covers_minimum(self) -> "WindowConfig":
        if self.max_lookahead_no_next_minutes < self.minimum_lookahead_minutes:
            raise ValueError("max_lookahead_no_next_minutes must be >= minimum_lookahead_minutes")
        return self

    @property
    def minimum_lookahead(self) -> timedelta:
        return timedelta(minutes=self.minimum_lookahead_minutes)

    @property
    def max_lookahead_no_next(self) -> timedelta:
        return timedelta(minutes=self.max_lookahead_no_next_minutes)

    @property
    def default_lookback(self) -> timedelta:
        return timedelta(minutes=self.default_lookback_minutes)


class AnalysisConfig(BaseModel):
    reanalysis_min_interval_minutes: int = Field(default=30, ge=1)
    notes_folder: str = Field(default="Cukier", min_length=1)
    model: str = Field(default="gpt-5-mini")
    max_parallel: int = Field(default=4, ge=1, le=32)

    @property
    def reanalysis_min_interval(self) -> timedelta:
        return timedelta(minutes=self.reanalysis_min_interval_minutes)


class RangeConfig(BaseModel):
    low_mgdl: float = Field(default=70.0, gt=0)
    high_mgdl: float = Field(default=180.0, gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> "RangeConfig":
        if self.low_mgdl >= self.high_mgdl:
            raise ValueError("low_mgdl must be below high_mgdl")
        return self


class DisplayConfig(BaseModel):
    timezone: str = Field(default="UTC")
    precision: int = Field(default=1, ge=0, le=4)


class NightscoutConfig(BaseModel):
    base_url: Optional[HttpUrl] = None
    api_secret: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None)
    timeout_seconds: int = Field(default=10, ge=1)


class Settings(BaseModel):
    windows: WindowConfig = Field(default_factory=WindowConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    ranges: RangeConfig = Field(default_factory=RangeConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    nightscout: NightscoutConfig = Field(default_factory=NightscoutConfig)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("display", mode="before")
    def _blank_timezone_is_utc(cls, v: Any) -> Any:
        if isinstance(v, dict) and not (v.get("timezone") or "").strip():
            v = {**v, "timezone": "UTC"}
        return v


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

# env var -> (section, key, caster)
_ENV_MAP: dict[str, tuple[str, str, type]] = {
    "MIN_LOOKAHEAD_MINUTES": ("windows", "minimum_lookahead_minutes", int),
    "MAX_LOOKAHEAD_NO_NEXT_MINUTES": ("windows", "max_lookahead_no_next_minutes", int),
    "DEFAULT_LOOKBACK_MINUTES": ("windows", "default_lookback_minutes", int),
    "REANALYSIS_MIN_INTERVAL_MINUTES": ("analysis", "reanalysis_min_interval_minutes", int),
    "NOTES_FOLDER": ("analysis", "notes_folder", str),
    "ANALYSIS_MODEL": ("analysis", "model", str),
    "ANALYSIS_MAX_PARALLEL": ("analysis", "max_parallel", int),
    "GLUCOSE_LOW_MGDL": ("ranges", "low_mgdl", float),
    "GLUCOSE_HIGH_MGDL": ("ranges", "high_mgdl", float),
    "DISPLAY_TIMEZONE": ("display", "timezone", str),
    "NIGHTSCOUT_API_SECRET": ("nightscout", "api_secret", str),
    "NIGHTSCOUT_TOKEN": ("nightscout", "token", str),
    "NIGHTSCOUT_TIMEOUT_SECONDS": ("nightscout", "timeout_seconds", int),
}

SECTIONS = ("windows", "analysis", "ranges", "display", "nightscout")


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON configuration at {path}") from exc


def _load_env(environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    env_config: dict[str, Any] = {}

    base_url = environ.get("NIGHTSCOUT_BASE_URL") or environ.get("NIGHTSCOUT_URL")
    if base_url:
        env_config.setdefault("nightscout", {})["base_url"] = base_url

    for name, (section, key, caster) in _ENV_MAP.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            env_config.setdefault(section, {})[key] = caster(raw)
        except ValueError as exc:
            raise RuntimeError(f"Invalid value for {name}: {raw!r}") from exc

    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for section in SECTIONS:
        merged[section] = {**file_config.get(section, {}), **env_config.get(section, {})}
    return merged


def load_settings(path: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> Settings:
    env_config = _load_env(environ)
    file_config = _load_file_config(path or DEFAULT_CONFIG_PATH)
    merged = merge_settings(env_config=env_config, file_config=file_config)
    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:
        raise RuntimeError(f"Configuration error: {exc}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


__all__ = [
    "AnalysisConfig",
    "DisplayConfig",
    "NightscoutConfig",
    "RangeConfig",
    "Settings",
    "WindowConfig",
    "get_settings",
    "load_settings",
]
