"""
Card Sync — Global Policy Config

Process-wide tunables loaded once per cycle and frozen for its duration.
Persisted as key/value strings (sync_settings); parsing and validation live
here so a bad row is rejected before it can reach the scheduler.
"""

from __future__ import annotations

from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.config import settings

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_STRINGS:
        return True
    if value in _FALSE_STRINGS:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


class PolicyConfig(BaseModel):
    """Immutable per-cycle policy."""

    model_config = ConfigDict(frozen=True)

    jitter_min_percent: float = Field(default_factory=lambda: settings.JITTER_MIN_PERCENT)
    jitter_max_percent: float = Field(default_factory=lambda: settings.JITTER_MAX_PERCENT)
    interval_levels_minutes: tuple[int, ...] = Field(
        default_factory=lambda: tuple(settings.INTERVAL_LEVELS_MINUTES)
    )
    no_change_level_up_threshold: int = Field(
        default_factory=lambda: settings.NO_CHANGE_LEVEL_UP_THRESHOLD, ge=1
    )
    batch_size_per_cycle: int = Field(default_factory=lambda: settings.SYNC_BATCH_SIZE, ge=1)
    globally_enabled: bool = Field(default_factory=lambda: settings.SYNC_ENABLED)

    @field_validator("interval_levels_minutes", mode="before")
    @classmethod
    def parse_levels(cls, v: object) -> object:
        if isinstance(v, str):
            return tuple(int(part) for part in v.split(",") if part.strip())
        return v

    @field_validator("globally_enabled", mode="before")
    @classmethod
    def parse_enabled(cls, v: object) -> object:
        if isinstance(v, str):
            return _parse_bool(v)
        return v

    @model_validator(mode="after")
    def check_bounds(self) -> PolicyConfig:
        if self.jitter_min_percent <= -100:
            raise ValueError("jitter_min_percent must be greater than -100")
        if self.jitter_min_percent > self.jitter_max_percent:
            raise ValueError("jitter_min_percent must not exceed jitter_max_percent")
        levels = self.interval_levels_minutes
        if not levels or any(level <= 0 for level in levels):
            raise ValueError("interval_levels_minutes must be non-empty positive minutes")
        if list(levels) != sorted(levels):
            raise ValueError("interval_levels_minutes must be ascending")
        return self

    @classmethod
    def from_rows(cls, rows: Mapping[str, str]) -> PolicyConfig:
        """
        Build from sync_settings key/value rows.

        Unknown keys are ignored; missing keys take the Settings default.
        Raises pydantic.ValidationError on malformed values.
        """
        known = {key: value for key, value in rows.items() if key in cls.model_fields}
        return cls.model_validate(known)

    def to_rows(self) -> dict[str, str]:
        """Serialize back to sync_settings key/value strings."""
        return {
            "jitter_min_percent": str(self.jitter_min_percent),
            "jitter_max_percent": str(self.jitter_max_percent),
            "interval_levels_minutes": ",".join(str(v) for v in self.interval_levels_minutes),
            "no_change_level_up_threshold": str(self.no_change_level_up_threshold),
            "batch_size_per_cycle": str(self.batch_size_per_cycle),
            "globally_enabled": "true" if self.globally_enabled else "false",
        }
