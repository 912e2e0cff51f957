"""
Load generator configuration.

Defines environment-specific configuration classes for a run.  Each
class captures where the ticketing backend lives, the ramp profile, the
pass/fail thresholds and the scenario's timing knobs.  Every value can
be overridden through environment variables; a YAML profile file and
explicit overrides (usually CLI flags) are layered on top, in that
order, by :func:`load_run_config`.

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- Immutable run configuration validated before any traffic is sent
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from ticketload.exceptions import ConfigurationError
from ticketload.scheduler import Stage, parse_duration, parse_stages
from ticketload.thresholds import Threshold, parse_threshold_string, parse_thresholds


class Config:
    """
    Base (shared) configuration.

    The defaults reproduce a flash-sale run: ramp to 500 users in 10s,
    hold for 50s, ramp down over 10s, against a 10,000-seat event.
    Values are kept as read from the environment and converted by
    :meth:`RunConfig.from_config`, so a malformed variable surfaces as a
    ``ConfigurationError`` instead of failing at import time.
    """

    BASE_URL = os.environ.get("BASE_URL", "http://localhost")
    SEAT_COUNT = os.environ.get("SEAT_COUNT", "10000")

    STAGES = os.environ.get("STAGES", "10s:500,50s:500,10s:0")
    START_TARGET = os.environ.get("START_TARGET", "0")

    # 95% of requests under 5s, and at least some reservations succeed.
    THRESHOLDS = os.environ.get(
        "THRESHOLDS",
        "http_req_duration=p(95)<5000;reservation_success_rate=rate>0.001",
    )

    # Seconds before a request is treated as failed.
    REQUEST_TIMEOUT = os.environ.get("REQUEST_TIMEOUT", "30")
    POLL_INTERVAL = os.environ.get("POLL_INTERVAL", "0.5")
    MAX_POLL_ATTEMPTS = os.environ.get("MAX_POLL_ATTEMPTS", "30")
    PACING = os.environ.get("PACING", "0.1")
    CONTROL_INTERVAL = os.environ.get("CONTROL_INTERVAL", "0.1")

    # Optional admission deadline; unset means "end of profile".
    MAX_DURATION = os.environ.get("MAX_DURATION") or None


class DevelopmentConfig(Config):
    """Local runs against a backend on the developer's machine."""


class TestingConfig(Config):
    """
    Test-suite overrides.

    Points at a non-routable host so tests never hit a real backend by
    accident, and shrinks every pause so scenarios complete quickly.
    """

    BASE_URL = os.environ.get("TEST_BASE_URL", "http://ticketing.test")
    SEAT_COUNT = "100"
    STAGES = "0.2s:5,0.2s:5,0.1s:0"
    REQUEST_TIMEOUT = "2"
    POLL_INTERVAL = "10ms"
    PACING = "0"
    CONTROL_INTERVAL = "20ms"


class ProductionConfig(Config):
    """
    Runs against a shared staging/production-like backend.

    All values are expected to come from the environment of the CI job.
    """


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``LOADGEN_ENV``
            environment variable is consulted.

    Returns:
        The matching ``Config`` subclass, or ``DevelopmentConfig`` if
        the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOADGEN_ENV", "development")
    return config.get(env, config["default"])


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run, fixed before execution starts."""

    base_url: str
    seat_count: int
    stages: tuple[Stage, ...]
    thresholds: tuple[Threshold, ...] = ()
    start_target: int = 0
    request_timeout: float = 30.0
    poll_interval: float = 0.5
    max_poll_attempts: int = 30
    pacing: float = 0.1
    control_interval: float = 0.1
    max_duration: float | None = None

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ConfigurationError("base_url is required")
        if self.seat_count <= 0:
            raise ConfigurationError("seat_count must be positive")
        if not self.stages:
            raise ConfigurationError("at least one ramp stage is required")
        if self.start_target < 0:
            raise ConfigurationError("start_target must not be negative")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.poll_interval < 0 or self.pacing < 0:
            raise ConfigurationError("pauses must not be negative")
        if self.max_poll_attempts < 1:
            raise ConfigurationError("max_poll_attempts must be at least 1")
        if self.control_interval <= 0:
            raise ConfigurationError("control_interval must be positive")
        if self.max_duration is not None and self.max_duration < 0:
            raise ConfigurationError("max_duration must not be negative")

    @classmethod
    def from_config(cls, config_class: type[Config]) -> "RunConfig":
        """
        Build a run configuration from a ``Config`` class.

        Raises:
            ConfigurationError: If any value cannot be converted.
        """
        max_duration = config_class.MAX_DURATION
        return cls(
            base_url=config_class.BASE_URL,
            seat_count=_to_int("SEAT_COUNT", config_class.SEAT_COUNT),
            stages=tuple(parse_stages(config_class.STAGES)),
            thresholds=parse_thresholds(parse_threshold_string(config_class.THRESHOLDS)),
            start_target=_to_int("START_TARGET", config_class.START_TARGET),
            request_timeout=parse_duration(config_class.REQUEST_TIMEOUT),
            poll_interval=parse_duration(config_class.POLL_INTERVAL),
            max_poll_attempts=_to_int("MAX_POLL_ATTEMPTS", config_class.MAX_POLL_ATTEMPTS),
            pacing=parse_duration(config_class.PACING),
            control_interval=parse_duration(config_class.CONTROL_INTERVAL),
            max_duration=parse_duration(max_duration) if max_duration is not None else None,
        )


def _to_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def load_profile(path: Path) -> dict[str, Any]:
    """
    Read a YAML ramp profile.

    The file may define ``stages`` (a list of ``{duration, target}``
    mappings), ``start_target``, ``seat_count`` and ``thresholds``
    (``{metric: expression | [expressions]}``).

    Raises:
        ConfigurationError: If the file is unreadable or malformed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read profile {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Profile {path} must be a mapping")

    profile: dict[str, Any] = {}
    try:
        if "stages" in data:
            stages = data["stages"]
            if not isinstance(stages, list):
                raise ConfigurationError("Profile stages must be a list")
            profile["stages"] = tuple(Stage.from_dict(stage) for stage in stages)
        if "thresholds" in data:
            if not isinstance(data["thresholds"], dict):
                raise ConfigurationError("Profile thresholds must be a mapping")
            profile["thresholds"] = parse_thresholds(data["thresholds"])
        for key in ("start_target", "seat_count", "max_poll_attempts"):
            if key in data:
                profile[key] = _to_int(key, data[key])
        for key in ("poll_interval", "pacing", "request_timeout", "max_duration"):
            if key in data:
                profile[key] = parse_duration(data[key])
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigurationError(f"Invalid value in profile {path}: {exc}") from exc
    if "base_url" in data:
        profile["base_url"] = str(data["base_url"])
    return profile


def load_run_config(
    config_name: str | None = None,
    *,
    profile: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RunConfig:
    """
    Assemble the run configuration: environment, then profile, then overrides.

    Args:
        config_name: Environment key passed to :func:`get_config`.
        profile: Optional YAML profile path.
        overrides: ``RunConfig`` field values that win over everything
            else.  ``None`` values are ignored.

    Returns:
        A validated, immutable :class:`RunConfig`.
    """
    run_config = RunConfig.from_config(get_config(config_name))

    if profile is not None:
        run_config = replace(run_config, **load_profile(profile))

    if overrides:
        changes = {key: value for key, value in overrides.items() if value is not None}
        if changes:
            try:
                run_config = replace(run_config, **changes)
            except TypeError as exc:
                raise ConfigurationError(f"Unknown configuration key: {exc}") from exc
    return run_config
