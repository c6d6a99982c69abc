"""
Configuration loader for the Event Gateway.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./event_gateway.db"        # postgresql:// | mysql:// | sqlite://
    ledger_backend: str = "memory"                   # "sql" | "memory"
    echo: bool = False


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    name: str = "events"
    lease_timeout_s: float = 30.0       # leased job becomes re-leasable after this
    reaper_interval_s: float = 5.0      # seconds between expired-lease scans
    completed_retention_s: int = 3600   # keep completed jobs for 1 hour
    completed_retention_count: int = 1000
    failed_retention_s: int = 86400     # keep failed jobs for 24 hours


@dataclass
class RetryConfig:
    max_attempts: int = 5
    base_delay_ms: int = 1000


@dataclass
class WorkerConfig:
    concurrency: int = 20
    max_rate: int = 100                 # attempts started per rate_duration_ms
    rate_duration_ms: int = 1000
    shutdown_grace_s: float = 30.0


@dataclass
class RoutingConfig:
    backend: str = "simulated"          # "simulated" | "http"
    base_url: str = ""
    timeout_s: float = 10.0
    delay_ms: int = 2000                # simulated service latency
    failure_rate: float = 0.1           # simulated service failure probability


@dataclass
class IngestionConfig:
    hmac_secret: str = ""
    rate_limit_max_requests: int = 100
    rate_limit_window_ms: int = 1000
    status_rate_limit_max: int = 50
    status_rate_limit_window_ms: int = 1000


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json_output: bool = False


@dataclass
class Settings:
    app_name: str = "event-gateway"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw mapping, ignoring unknown keys.

    Values left as an unresolved ``${VAR}`` fall back to the dataclass default,
    and numeric/bool defaults coerce string values coming from the environment.
    """
    defaults = cls()
    kwargs = {}
    for name in cls.__dataclass_fields__:
        if name not in raw:
            continue
        value = raw[name]
        default = getattr(defaults, name)
        if isinstance(value, str) and value.startswith("${"):
            continue
        if isinstance(default, bool) and isinstance(value, str):
            value = value.strip().lower() in ("1", "true", "yes", "on")
        elif isinstance(default, int) and not isinstance(default, bool) and isinstance(value, str):
            value = int(value)
        elif isinstance(default, float) and isinstance(value, (str, int)):
            value = float(value)
        kwargs[name] = value
    return cls(**kwargs)


_SECTIONS = {
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "retry": RetryConfig,
    "worker": WorkerConfig,
    "routing": RoutingConfig,
    "ingestion": IngestionConfig,
    "logging": LoggingConfig,
}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "EVENT_GATEWAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        for section, cls in _SECTIONS.items():
            if section in raw:
                setattr(settings, section, _build_section(cls, raw[section] or {}))

    # The signing secret is never committed to YAML; the environment wins.
    secret = os.environ.get("HMAC_SECRET")
    if secret:
        settings.ingestion.hmac_secret = secret

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
