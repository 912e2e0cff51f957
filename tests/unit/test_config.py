"""
Unit tests for configuration loading and layering.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from ticketload.config import RunConfig, get_config, load_profile, load_run_config
from ticketload.exceptions import ConfigurationError
from ticketload.scheduler import Stage

pytestmark = pytest.mark.unit


def _run_config(**overrides) -> RunConfig:
    values = {"base_url": "http://ticketing.test", "seat_count": 10, "stages": (Stage(1, 1),)}
    values.update(overrides)
    return RunConfig(**values)


def test_get_config_falls_back_to_development():
    assert get_config("nope") is get_config("development")


def test_get_config_reads_loadgen_env(monkeypatch):
    monkeypatch.setenv("LOADGEN_ENV", "testing")

    assert get_config() is get_config("testing")


def test_default_run_config_is_the_flash_sale_profile():
    """Test that the shipped defaults describe the 10s/50s/10s flash sale."""
    run_config = RunConfig.from_config(get_config("production"))

    assert run_config.stages == (Stage(10, 500), Stage(50, 500), Stage(10, 0))
    assert [t.expression for t in run_config.thresholds] == ["p(95)<5000", "rate>0.001"]
    assert run_config.max_poll_attempts == 30
    assert run_config.poll_interval == 0.5


@pytest.mark.parametrize(
    "overrides",
    [
        {"base_url": ""},
        {"seat_count": 0},
        {"stages": ()},
        {"start_target": -1},
        {"request_timeout": 0},
        {"poll_interval": -0.1},
        {"pacing": -1},
        {"max_poll_attempts": 0},
        {"control_interval": 0},
        {"max_duration": -5},
    ],
)
def test_run_config_rejects_invalid_values(overrides):
    with pytest.raises(ConfigurationError):
        _run_config(**overrides)


def test_load_profile_reads_yaml(tmp_path):
    """Test that a YAML profile supplies stages, thresholds and timing knobs."""
    # Arrange
    path = tmp_path / "profile.yml"
    path.write_text(
        "stages:\n"
        "  - {duration: 30s, target: 200}\n"
        "  - {duration: 1m, target: 200}\n"
        "  - {duration: 30s, target: 0}\n"
        "start_target: 10\n"
        "seat_count: 5000\n"
        "poll_interval: 250ms\n"
        "thresholds:\n"
        "  http_req_duration: ['p(95)<2000', 'p(99)<4000']\n"
        "  checks: rate>0.95\n",
        encoding="utf-8",
    )

    # Act
    profile = load_profile(path)

    # Assert
    assert profile["stages"] == (Stage(30, 200), Stage(60, 200), Stage(30, 0))
    assert profile["start_target"] == 10
    assert profile["seat_count"] == 5000
    assert profile["poll_interval"] == pytest.approx(0.25)
    assert [t.expression for t in profile["thresholds"]] == ["p(95)<2000", "p(99)<4000", "rate>0.95"]


@pytest.mark.parametrize(
    "content",
    ["- just\n- a list\n", "stages: 10s\n", "thresholds: [rate>0]\n", "stages: [\n"],
    ids=["not-a-mapping", "stages-not-list", "thresholds-not-mapping", "bad-yaml"],
)
def test_load_profile_rejects_malformed_files(tmp_path, content):
    path = tmp_path / "profile.yml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_profile(path)


def test_load_profile_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_profile(tmp_path / "missing.yml")


def test_overrides_win_over_profile(tmp_path):
    """Test the layering order: environment, then profile, then overrides."""
    path = tmp_path / "profile.yml"
    path.write_text("seat_count: 300\nbase_url: http://from-profile\n", encoding="utf-8")

    run_config = load_run_config(
        "testing",
        profile=path,
        overrides={"base_url": "http://from-cli", "seat_count": None},
    )

    assert run_config.base_url == "http://from-cli"
    assert run_config.seat_count == 300


def test_unknown_override_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        load_run_config("testing", overrides={"seats": 5})


def test_shipped_flash_sale_profile_loads():
    path = Path(__file__).resolve().parents[2] / "profiles" / "flash_sale.yml"

    run_config = load_run_config("testing", profile=path)

    assert run_config.stages == (Stage(10, 500), Stage(50, 500), Stage(10, 0))
    assert run_config.seat_count == 10000
    assert run_config.pacing == pytest.approx(0.1)


@pytest.mark.parametrize(
    "content",
    [
        "seat_count: lots\n",
        "start_target: [1, 2]\n",
        "poll_interval: {x: 1}\n",
        "pacing: soon\n",
        "stages: [10s]\n",
        "thresholds: {checks: 5}\n",
    ],
    ids=["word-count", "list-count", "mapping-duration", "word-duration", "bare-stage", "numeric-threshold"],
)
def test_load_profile_wraps_bad_values(tmp_path, content):
    """Test that malformed profile values surface as configuration errors."""
    path = tmp_path / "profile.yml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_profile(path)


@pytest.mark.parametrize(
    ("attribute", "value"),
    [
        ("SEAT_COUNT", "abc"),
        ("MAX_POLL_ATTEMPTS", "3.5"),
        ("POLL_INTERVAL", "half a second"),
        ("MAX_DURATION", "-1m"),
    ],
)
def test_malformed_environment_value_is_a_configuration_error(monkeypatch, attribute, value):
    """Test that a bad environment value is rejected when the run config is built."""
    config_class = get_config("production")
    monkeypatch.setattr(config_class, attribute, value)

    with pytest.raises(ConfigurationError):
        RunConfig.from_config(config_class)
