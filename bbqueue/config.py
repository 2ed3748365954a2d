"""bbqueue configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: BBQ_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class RedisConfig:
    url: str = "redis://localhost:6379/0"
    socket_connect_timeout: float = 5.0
    health_check_interval: int = 30


@dataclass
class QueueConfig:
    codec: str = "json"  # "json" or "str"
    default_capacity: int = 0  # 0: leave new queues uninitialized
    max_poll_timeout: float = 30.0  # upper bound for HTTP long polls
    max_open_queues: int = 1024  # gateway keeps the most recently used ones
    abort_attempts: int = 3
    abort_grace_seconds: float = 0.05


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "BBQ_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "BBQ_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "BBQ_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "BBQ_REDIS_URL": lambda v: setattr(config.redis, "url", v),
        "BBQ_REDIS_CONNECT_TIMEOUT": lambda v: setattr(config.redis, "socket_connect_timeout", float(v)),
        "BBQ_QUEUE_CODEC": lambda v: setattr(config.queue, "codec", v),
        "BBQ_QUEUE_DEFAULT_CAPACITY": lambda v: setattr(config.queue, "default_capacity", int(v)),
        "BBQ_QUEUE_MAX_POLL_TIMEOUT": lambda v: setattr(config.queue, "max_poll_timeout", float(v)),
        "BBQ_QUEUE_MAX_OPEN_QUEUES": lambda v: setattr(config.queue, "max_open_queues", int(v)),
        "BBQ_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "BBQ_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path(os.environ.get("BBQ_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in fields(config):
            values = raw.get(section.name) or {}
            target = getattr(config, section.name)
            for k, v in values.items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
