"""
config/settings.py — autocycle Runtime Settings

Merges config.yaml (structure/defaults) with AUTOCYCLE_* environment
variables and an optional .env file. Pydantic-powered — every field is
validated and typed at parse time.

  - SchedulerConfig rejects out-of-range break chance, inverted break
    duration ranges and unsorted break schedules at parse time
  - ActivitySpec rejects empty keys and non-positive weights
  - PersistenceConfig rejects profile ids that are unsafe as file names;
    both sub-models re-validate on assignment (CLI overrides)
  - validate_all() performs cross-field checks (duplicate keys, nothing
    enabled) and raises ConfigurationError listing every problem found
  - load_settings() respects AUTOCYCLE_CONFIG as a fallback when no
    explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autocycle.exceptions import ConfigurationError
from autocycle.persistence.store import validate_profile_id


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_BACKENDS = {"json", "sqlite", "none"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    max_runtime_seconds: Optional[float] = None
    switch_interval_seconds: float = 0.0
    break_chance: float = 0.0
    break_duration_range: tuple[float, float] = (0.0, 0.0)
    break_schedule: List[float] = Field(default_factory=list)
    report_interval_seconds: float = 60.0
    session_poll_interval_seconds: float = 1.0
    seed: Optional[int] = None
    strict: bool = False
    prefer_config: bool = False

    @field_validator("max_runtime_seconds")
    @classmethod
    def _positive_runtime(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("scheduler.max_runtime_seconds must be > 0 (omit it for no limit)")
        return v

    @field_validator("switch_interval_seconds", "report_interval_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("scheduler intervals must be >= 0")
        return v

    @field_validator("session_poll_interval_seconds")
    @classmethod
    def _positive_poll(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("scheduler.session_poll_interval_seconds must be > 0")
        return v

    @field_validator("break_chance")
    @classmethod
    def _valid_chance(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("scheduler.break_chance must be between 0.0 and 1.0")
        return v

    @field_validator("break_duration_range")
    @classmethod
    def _valid_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        low, high = v
        if low < 0 or high < low:
            raise ValueError(
                f"scheduler.break_duration_range must satisfy 0 <= min <= max, got [{low}, {high}]"
            )
        return v

    @field_validator("break_schedule")
    @classmethod
    def _ascending_schedule(cls, v: list[float]) -> list[float]:
        if any(o < 0 for o in v):
            raise ValueError("scheduler.break_schedule offsets must be >= 0")
        if v != sorted(v):
            raise ValueError(f"scheduler.break_schedule must be ascending, got {v}")
        return v


class ActivitySpec(BaseModel):
    """One activity as declared in config.yaml. The work callable is bound at runtime."""
    key: str
    target_metric: float
    weight: float = 1.0
    enabled: bool = True
    baseline_metric: Optional[float] = None

    @field_validator("key")
    @classmethod
    def _normalize_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("activity key must not be empty")
        return v.strip().lower()

    @field_validator("weight")
    @classmethod
    def _positive_weight(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"activity weight must be > 0, got {v}")
        return v


class PersistenceConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    backend: str = "json"
    path: str = "./data/profiles"
    profile_id: str = "default"

    @field_validator("profile_id")
    @classmethod
    def _safe_profile_id(cls, v: str) -> str:
        # blank ids are reported by validate_all(), where the backend is known
        if v.strip():
            try:
                validate_profile_id(v)
            except ConfigurationError as e:
                raise ValueError(str(e)) from e
        return v

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        lower = v.lower()
        if lower not in _VALID_BACKENDS:
            raise ValueError(
                f"persistence.backend '{v}' is not supported. Supported: {sorted(_VALID_BACKENDS)}"
            )
        return lower


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 20
    backup_count: int = 5
    console_output: bool = False
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    autocycle runtime settings.

    Priority (highest to lowest):
      1. Environment variables (AUTOCYCLE_SCHEDULER__BREAK_CHANCE=0.1)
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOCYCLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    activities: List[ActivitySpec] = Field(default_factory=list)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML arrives as init kwargs; let the environment override it.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def _break_range_when_breaks_possible(self) -> "Settings":
        s = self.scheduler
        if (s.break_chance > 0 or s.break_schedule) and s.break_duration_range[1] <= 0:
            raise ValueError(
                "scheduler.break_duration_range must allow a positive duration "
                "when break_chance > 0 or break_schedule is set"
            )
        return self

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def profile_id(self) -> str:
        return self.persistence.profile_id

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigurationError listing every problem found.

        Pydantic validators catch per-field problems at parse time; this
        method catches cross-field problems across the activity list.
        """
        errors: list[str] = []

        # ── Activities ───────────────────────────────────────────────────────
        if not self.activities:
            errors.append("No activities configured. Add at least one entry under 'activities:'.")

        seen: set[str] = set()
        for spec in self.activities:
            if spec.key in seen:
                errors.append(f"Activity key '{spec.key}' is declared more than once (keys are case-insensitive).")
            seen.add(spec.key)

        if self.activities and not any(a.enabled and a.weight > 0 for a in self.activities):
            errors.append("Every activity is disabled. Enable at least one activity.")

        # ── Persistence ──────────────────────────────────────────────────────
        if self.persistence.backend != "none" and not self.persistence.profile_id.strip():
            errors.append("persistence.profile_id must not be empty.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigurationError(
                f"\n\nautocycle startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in your config file or environment and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"scheduler", "activities", "persistence", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a YAML mapping at the top level.")
    return data


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. AUTOCYCLE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("AUTOCYCLE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging the YAML config with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)
    init_kwargs: dict[str, Any] = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the process-wide Settings, loading the default config on first use."""
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _KNOWN_SECTIONS
            })
        return _singleton
