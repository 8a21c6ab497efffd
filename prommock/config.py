"""Configuration models using Pydantic for validation."""
from datetime import datetime
from typing import Literal, Optional, Union
import logging
import os

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from prommock.query import DEFAULT_LOOKBACK_MS, DEFAULT_MAX_POINTS
from prommock.timeutil import duration_to_ms, to_ms

logger = logging.getLogger(__name__)

DEFAULT_LISTEN = "127.0.0.1:19090"


class MockSettings(BaseModel):
    """Latency, error injection and clock control."""
    model_config = ConfigDict(frozen=True)

    latency: Union[int, float, str] = 0
    error_rate: float = 0.0
    fixed_now: Optional[Union[datetime, float, str]] = None
    seed: Optional[int] = None

    @field_validator('latency')
    @classmethod
    def validate_latency(cls, v):
        duration_to_ms(v)
        return v

    @field_validator('error_rate')
    @classmethod
    def validate_error_rate(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Error rate must be between 0.0 and 1.0, got: {v}")
        return v

    @field_validator('fixed_now')
    @classmethod
    def validate_fixed_now(cls, v):
        if v is not None:
            to_ms(v)
        return v

    @property
    def latency_ms(self) -> int:
        return duration_to_ms(self.latency) or 0

    @property
    def fixed_now_ms(self) -> Optional[int]:
        if self.fixed_now is None:
            return None
        return to_ms(self.fixed_now)


class QuerySettings(BaseModel):
    """Query engine limits."""
    model_config = ConfigDict(frozen=True)

    lookback_delta: Union[int, float, str] = "5m"
    max_points: int = DEFAULT_MAX_POINTS

    @field_validator('lookback_delta')
    @classmethod
    def validate_lookback(cls, v):
        if not duration_to_ms(v):
            raise ValueError(f"Lookback delta must be positive, got: {v}")
        return v

    @field_validator('max_points')
    @classmethod
    def validate_max_points(cls, v):
        if v < 1:
            raise ValueError(f"max_points must be at least 1, got: {v}")
        return v

    @property
    def lookback_ms(self) -> int:
        return duration_to_ms(self.lookback_delta) or DEFAULT_LOOKBACK_MS


class ServerConfig(BaseModel):
    """Root configuration model."""
    model_config = ConfigDict(frozen=True)

    listen: str = DEFAULT_LISTEN
    fixtures: Optional[str] = None
    mock: MockSettings = Field(default_factory=MockSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"

    @field_validator('listen')
    @classmethod
    def validate_listen(cls, v):
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f"listen must be host:port, got: {v!r}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def host(self) -> str:
        return self.listen.rpartition(":")[0].strip("[]")

    @property
    def port(self) -> int:
        return int(self.listen.rpartition(":")[2])


def load_config(config_path: Optional[str] = None, **overrides) -> ServerConfig:
    """Load and validate configuration from a YAML file.

    Environment variables override the file, and keyword overrides (from the
    command line) override both. ``None`` overrides are ignored.
    """
    raw_config = {}
    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        with open(config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")

    # Apply environment variable overrides
    if env_listen := os.getenv('PROMMOCK_LISTEN'):
        raw_config['listen'] = env_listen
    if env_fixtures := os.getenv('PROMMOCK_FIXTURES'):
        raw_config['fixtures'] = env_fixtures
    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config['log_level'] = env_log_level

    for key, value in overrides.items():
        if value is None:
            continue
        if key in ('latency', 'error_rate', 'fixed_now', 'seed'):
            mock = dict(raw_config.get('mock') or {})
            mock[key] = value
            raw_config['mock'] = mock
        else:
            raw_config[key] = value

    try:
        return ServerConfig(**raw_config)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
