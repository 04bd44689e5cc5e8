# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the notification service.

Settings come from an INI file (default ``config.ini``, overridden by the
``DN_CONFIG`` environment variable) with environment variables as fallbacks.
A value in the file wins over the environment, and the environment wins over
the built-in default.

Example:
    Configuration file format (config.ini)::

        [smtp]
        sender_email = noreply@example.com
        sender_password = secret
        host = smtp.example.com
        port = 587
        use_tls = true
        skip_verify = false
        max_retries = 3
        basic_retry_pause = 5
        attempt_timeout = 30

        [redis]
        url = redis://localhost:6379/0
        key = delayedSending
        timeout = 3
        shutdown_timeout = 5

        [worker]
        tick_interval = 1

        [storage]
        db_path = /data/notifications.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = my-secret-token

        [logging]
        level = INFO

Environment variables (all prefixed with DN_):
    DN_SENDER_EMAIL, DN_SENDER_PASSWORD, DN_SMTP_HOST, DN_SMTP_PORT,
    DN_SMTP_USE_TLS, DN_SMTP_SKIP_VERIFY, DN_MAX_RETRIES, DN_BASIC_RETRY_PAUSE,
    DN_ATTEMPT_TIMEOUT, DN_REDIS_URL, DN_REDIS_KEY, DN_REDIS_TIMEOUT,
    DN_REDIS_SHUTDOWN_TIMEOUT, DN_TICK_INTERVAL, DN_DB_PATH, DN_HOST, DN_PORT,
    DN_API_TOKEN, DN_LOG_LEVEL
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .delayed_queue import DEFAULT_QUEUE_KEY, DEFAULT_SHUTDOWN_TIMEOUT, DEFAULT_TIMEOUT
from .logger import get_logger
from .smtp_client import DEFAULT_ATTEMPT_TIMEOUT, SMTPConfig
from .worker import DEFAULT_TICK_INTERVAL

logger = get_logger("Config")

ENV_PREFIX = "DN_"


@dataclass
class RedisSettings:
    """Delayed queue connection settings."""

    url: str = "redis://localhost:6379/0"
    key: str = DEFAULT_QUEUE_KEY
    timeout: float = DEFAULT_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT


@dataclass
class ServerSettings:
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None


@dataclass
class Settings:
    """Complete process configuration.

    Attributes:
        smtp: SMTP client configuration.
        redis: Delayed queue settings.
        tick_interval: Seconds between two worker polls.
        db_path: SQLite audit database path.
        server: HTTP server settings.
        log_level: Root logging level name.
    """

    smtp: SMTPConfig
    redis: RedisSettings = field(default_factory=RedisSettings)
    tick_interval: float = DEFAULT_TICK_INTERVAL
    db_path: str = "/data/notifications.db"
    server: ServerSettings = field(default_factory=ServerSettings)
    log_level: str = "INFO"


def load_settings(path: str | os.PathLike[str] | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from an INI file with ``DN_*`` environment fallbacks.

    A missing file is not an error: every option then comes from the
    environment or the defaults.

    Args:
        path: INI file path. Defaults to ``$DN_CONFIG`` or ``config.ini``.
        environ: Environment mapping, ``os.environ`` when omitted.

    Raises:
        ValueError: If a numeric or boolean option cannot be parsed. The
            message names the section and option.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get(f"{ENV_PREFIX}CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if config_path.exists():
        parser.read(config_path)
        logger.info("Loaded configuration from %s", config_path)
    else:
        logger.info("No configuration file at %s, using environment and defaults", config_path)

    def get(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(f"{ENV_PREFIX}{env_name}", default)

    def get_int(section: str, option: str, env_name: str, default: int | None) -> int | None:
        value = get(section, option, env_name)
        if value is None or value.strip() == "":
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"[{section}] {option}: invalid integer {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float | None) -> float | None:
        value = get(section, option, env_name)
        if value is None or value.strip() == "":
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"[{section}] {option}: invalid number {value!r}") from exc

    def get_bool(section: str, option: str, env_name: str, default: bool | None) -> bool | None:
        value = get(section, option, env_name)
        if value is None or value.strip() == "":
            return default
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"[{section}] {option}: invalid boolean {value!r}")

    smtp = SMTPConfig(
        sender_email=get("smtp", "sender_email", "SENDER_EMAIL", "") or "",
        sender_password=get("smtp", "sender_password", "SENDER_PASSWORD"),
        host=get("smtp", "host", "SMTP_HOST", "localhost") or "localhost",
        port=get_int("smtp", "port", "SMTP_PORT", 25),
        use_tls=get_bool("smtp", "use_tls", "SMTP_USE_TLS", None),
        skip_verify=bool(get_bool("smtp", "skip_verify", "SMTP_SKIP_VERIFY", False)),
        max_retries=get_int("smtp", "max_retries", "MAX_RETRIES", None),
        basic_retry_pause=get_float("smtp", "basic_retry_pause", "BASIC_RETRY_PAUSE", None),
        attempt_timeout=get_float("smtp", "attempt_timeout", "ATTEMPT_TIMEOUT", DEFAULT_ATTEMPT_TIMEOUT),
    )
    redis = RedisSettings(
        url=get("redis", "url", "REDIS_URL", RedisSettings.url),
        key=get("redis", "key", "REDIS_KEY", DEFAULT_QUEUE_KEY),
        timeout=get_float("redis", "timeout", "REDIS_TIMEOUT", DEFAULT_TIMEOUT),
        shutdown_timeout=get_float("redis", "shutdown_timeout", "REDIS_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
    )
    server = ServerSettings(
        host=get("server", "host", "HOST", ServerSettings.host),
        port=get_int("server", "port", "PORT", ServerSettings.port),
        api_token=get("server", "api_token", "API_TOKEN") or None,
    )
    return Settings(
        smtp=smtp,
        redis=redis,
        tick_interval=get_float("worker", "tick_interval", "TICK_INTERVAL", DEFAULT_TICK_INTERVAL),
        db_path=get("storage", "db_path", "DB_PATH", Settings.db_path),
        server=server,
        log_level=(get("logging", "level", "LOG_LEVEL", "INFO") or "INFO").upper(),
    )
