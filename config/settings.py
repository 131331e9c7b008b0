"""
Configuration loader for the WhatsApp outbound queue.
Reads settings from YAML file with environment variable substitution,
then applies RATE_LIMIT_* environment overrides.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_RATE_LIMIT_PATTERNS = ["rate-overlimit", "too many requests", "rate limit"]
DEFAULT_NON_RETRYABLE_PATTERNS = [
    "not authorized", "unauthorized", "forbidden", "not found", "invalid", "bad request",
]


@dataclass
class RateLimitConfig:
    enabled: bool = False
    redis_uri: str = ""                     # redis://host:6379/0 | memory://
    max_retries: int = 3                    # backend attempts per job
    initial_backoff_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 60000
    backoff_jitter_factor: float = 0.25
    backoff_reset_ms: int = 300000          # quiet period before backoff clears
    message_delay_ms: int = 1500            # base dispatch delay for sends
    jitter_factor: float = 0.5              # dispatch-side jitter
    messages_per_minute: int = 20           # rate window size
    queue_timeout_ms: int = 30000           # default wait_for_job timeout
    poll_interval_ms: int = 200             # worker idle poll
    stalled_job_ms: int = 120000            # active longer than this is requeued
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    rate_limit_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_RATE_LIMIT_PATTERNS))
    non_retryable_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_NON_RETRYABLE_PATTERNS))


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "WhatsAppQueue"
    debug: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


_settings: Optional[Settings] = None

ENV_PREFIX = "RATE_LIMIT_"


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
    """Coerce a raw YAML/env value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(float(value))
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return [str(v) for v in value]
    return str(value)


def _build_rate_limit(raw: dict[str, Any]) -> RateLimitConfig:
    conf = RateLimitConfig()
    for f in fields(conf):
        value = raw.get(f.name)
        if value is None or _is_unresolved(value):
            continue
        setattr(conf, f.name, _coerce(value, getattr(conf, f.name)))
    return conf


def _is_unresolved(value: Any) -> bool:
    """True for a ${VAR} placeholder whose variable is not set."""
    return isinstance(value, str) and re.fullmatch(r'\$\{\w+\}', value.strip()) is not None


def apply_env_overrides(conf: RateLimitConfig, environ: dict[str, str] = None) -> RateLimitConfig:
    """Override fields from RATE_LIMIT_<FIELD> environment variables."""
    environ = os.environ if environ is None else environ
    for f in fields(conf):
        env_name = ENV_PREFIX + f.name.upper()
        if env_name in environ:
            setattr(conf, f.name, _coerce(environ[env_name], getattr(conf, f.name)))
    return conf


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WA_QUEUE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=bool(lg.get("json", False)),
            )

        if "rate_limit" in raw:
            settings.rate_limit = _build_rate_limit(raw["rate_limit"] or {})

    apply_env_overrides(settings.rate_limit)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the singleton (for testing)."""
    global _settings
    _settings = None
