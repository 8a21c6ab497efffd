"""Tests for configuration loading."""
from pathlib import Path

import pytest

from prommock.config import MockSettings, QuerySettings, ServerConfig, load_config

CONFIGS = Path(__file__).resolve().parent.parent / "configs"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PROMMOCK_LISTEN", "PROMMOCK_FIXTURES", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    """A config with nothing set uses the documented defaults."""
    config = ServerConfig()
    assert config.listen == "127.0.0.1:19090"
    assert config.host == "127.0.0.1"
    assert config.port == 19090
    assert config.fixtures is None
    assert config.mock.latency_ms == 0
    assert config.mock.error_rate == 0.0
    assert config.mock.fixed_now_ms is None
    assert config.query.lookback_ms == 300_000
    assert config.query.max_points == 11000


def test_example_config_loads():
    """The shipped example config is valid."""
    config = load_config(str(CONFIGS / "prom-mock.yaml"))
    assert config.fixtures == "configs/fixtures.yaml"
    assert config.mock.fixed_now_ms == 1_704_067_200_000
    assert config.mock.seed == 42
    assert config.log_level == "INFO"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("does/not/exist.yaml")


def test_env_and_cli_overrides(tmp_path, monkeypatch):
    """Environment overrides the file and keyword overrides win over both."""
    path = tmp_path / "config.yaml"
    path.write_text("listen: 0.0.0.0:9000\nmock:\n  error_rate: 0.1\n  seed: 3\n")
    monkeypatch.setenv("PROMMOCK_LISTEN", "127.0.0.1:9100")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = load_config(str(path), error_rate=0.5, latency="100ms", listen=None)
    assert config.listen == "127.0.0.1:9100"
    assert config.log_level == "DEBUG"
    assert config.mock.error_rate == 0.5
    assert config.mock.latency_ms == 100
    assert config.mock.seed == 3


def test_config_without_file():
    """Overrides alone are enough to build a config."""
    config = load_config(None, fixed_now="1704067200", fixtures="f.yaml")
    assert config.mock.fixed_now_ms == 1_704_067_200_000
    assert config.fixtures == "f.yaml"


@pytest.mark.parametrize("overrides", [
    {"error_rate": 1.5},
    {"latency": "soon"},
    {"fixed_now": "yesterday"},
    {"listen": "localhost"},
    {"log_level": "chatty"},
])
def test_invalid_values(overrides):
    """Validation failures are reported as ValueError."""
    with pytest.raises(ValueError, match="Configuration validation failed"):
        load_config(None, **overrides)


def test_settings_models():
    """Durations accept strings or seconds."""
    assert MockSettings(latency=0.25).latency_ms == 250
    assert QuerySettings(lookback_delta="1m").lookback_ms == 60_000
    with pytest.raises(ValueError):
        QuerySettings(lookback_delta="0s")
