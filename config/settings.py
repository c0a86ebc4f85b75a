"""
Configuration loader for the dispatch pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "webengage_requests"
    batch_size: int = 70                # max items popped per poll
    concurrency: int = 0                # in-flight dispatches per batch; 0 = batch_size
    idle_backoff_seconds: float = 1.0   # sleep after a short/empty batch
    error_backoff_seconds: float = 5.0  # sleep after an unexpected loop error
    lease_timeout_seconds: float = 300.0
    reclaim_interval_seconds: float = 30.0

    @property
    def effective_concurrency(self) -> int:
        return self.concurrency or self.batch_size


@dataclass
class MongoConfig:
    url: str = "mongodb://localhost:27017"
    store_backend: str = "memory"       # "mongo" | "memory"
    max_pool_size: int = 50
    connect_timeout_ms: int = 30000
    socket_timeout_ms: int = 60000
    server_selection_timeout_ms: int = 5000
    system_tenant: str = "super_admin"
    system_db: str = "super_admin_db"
    reseller_db_suffix: str = "_reseller"
    users_collection: str = "users"
    templates_suffix: str = "_templates"
    pricing_suffix: str = "_pricing"
    session_suffix: str = "_sessions"
    live_chat_suffix: str = "_livechat"
    pricing_dial_code: str = "91"


@dataclass
class ProviderConfig:
    send_url: str = ""
    template_url: str = ""
    username: str = ""
    password: str = ""
    customer_id: str = ""
    sub_account_id: str = ""
    timeout_seconds: float = 10.0       # 0 disables the timeout
    rate_per_second: float = 80.0
    burst: int = 100


@dataclass
class CallbackConfig:
    default_endpoint: str = ""
    timeout_seconds: float = 10.0


@dataclass
class WorkerConfig:
    count: int = 0                      # 0 = one per CPU
    restart_delay_seconds: float = 1.0

    @property
    def effective_count(self) -> int:
        return self.count or os.cpu_count() or 1


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    max_body_bytes: int = 100 * 1024


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "WhatsAppDispatch"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    mongo: MongoConfig = field(default_factory=MongoConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
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


def _coerce(value: Any, default: Any) -> Any:
    """Cast a YAML/env value to the type of the dataclass default."""
    if value is None or value == "":
        return default
    # unresolved ${VAR} placeholder
    if isinstance(value, str) and value.startswith("${"):
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, raw: dict[str, Any]):
    section = cls()
    for f in fields(cls):
        if f.name in raw:
            setattr(section, f.name, _coerce(raw[f.name], getattr(section, f.name)))
    return section


_SECTIONS = {
    "queue": QueueConfig,
    "mongo": MongoConfig,
    "provider": ProviderConfig,
    "callback": CallbackConfig,
    "workers": WorkerConfig,
    "api": ApiConfig,
    "logging": LoggingConfig,
}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DISPATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _coerce(raw.get("debug"), settings.debug)

        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _build_section(cls, raw[name] or {}))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
