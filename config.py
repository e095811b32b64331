"""Configuration loading, environment overrides and validation.

Configuration is a JSON document validated against ``CONFIG_SCHEMA``.  A
missing file is not an error: every setting has a default, and
``HARBORBUDDY_*`` environment variables are applied on top.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema

from errors import ConfigError

logger = logging.getLogger("harborbuddy.config")

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
DEFAULT_CHECK_INTERVAL = 30 * 60
LOG_LEVELS = ("debug", "info", "warn", "error")

_DURATION = {"type": ["string", "number"]}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "docker": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "tls": {"type": "boolean"},
                "cert_path": {"type": "string"},
                "key_path": {"type": "string"},
                "ca_path": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "updates": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "check_interval": _DURATION,
                "schedule_time": {"type": "string"},
                "timezone": {"type": "string"},
                "dry_run": {"type": "boolean"},
                "allow_images": {"type": "array", "items": {"type": "string"}},
                "deny_images": {"type": "array", "items": {"type": "string"}},
                "stop_timeout": _DURATION,
            },
            "additionalProperties": False,
        },
        "cleanup": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "min_age_hours": {"type": "integer"},
                "dangling_only": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "log": {
            "type": "object",
            "properties": {
                "level": {"type": "string"},
                "json": {"type": "boolean"},
                "file": {"type": "string"},
                "max_size": {"type": "integer", "minimum": 1},
                "max_backups": {"type": "integer", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "logging": {
            "type": "object",
            "properties": {
                "driver": {"type": "string"},
                "options": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        },
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {
                            "type": "string",
                            "enum": ["min", "low", "default", "high", "urgent"]
                        },
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        }
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string"},
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        },
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        }
    },
    "additionalProperties": False,
}


@dataclass
class DockerConfig:
    host: str = DEFAULT_DOCKER_HOST
    tls: bool = False
    cert_path: str = ""
    key_path: str = ""
    ca_path: str = ""


@dataclass
class UpdatesConfig:
    enabled: bool = True
    check_interval: float = DEFAULT_CHECK_INTERVAL
    schedule_time: str = ""
    timezone: str = "UTC"
    dry_run: bool = False
    allow_images: List[str] = field(default_factory=lambda: ["*"])
    deny_images: List[str] = field(default_factory=list)
    stop_timeout: float = 10


@dataclass
class CleanupConfig:
    enabled: bool = True
    min_age_hours: int = 24
    dangling_only: bool = True


@dataclass
class LogConfig:
    level: str = "info"
    json: bool = False
    file: str = ""
    max_size: int = 10  # megabytes
    max_backups: int = 1


@dataclass
class NotificationsConfig:
    ntfy: Optional[Dict[str, Any]] = None
    webhook: Optional[Dict[str, Any]] = None

    @property
    def enabled(self) -> bool:
        return bool(self.ntfy or self.webhook)


@dataclass
class Config:
    docker: DockerConfig = field(default_factory=DockerConfig)
    updates: UpdatesConfig = field(default_factory=UpdatesConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    log: LogConfig = field(default_factory=LogConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    # Runtime flags, set from the command line only
    run_once: bool = False
    cleanup_only: bool = False


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as ``90s``,
    ``30m`` or ``1h30m``.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way the config accepts them, e.g. ``1h30m``."""
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


def parse_docker_size(value: str) -> int:
    """Convert a Docker log-option size (``10m``, ``1g``, ``512k``) to megabytes.

    A unit is required.  Non-zero sizes below one megabyte round up to 1.
    """
    text = value.strip().lower()
    if not text:
        raise ValueError("empty size")
    multipliers = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}
    unit = text[-1]
    if unit not in multipliers:
        raise ValueError(f"missing unit in {value!r} (must be k, m, or g)")
    size_bytes = int(text[:-1]) * multipliers[unit]
    megabytes = size_bytes // (1024 * 1024)
    if megabytes == 0 and size_bytes > 0:
        return 1
    return megabytes


def _apply_logging_compatibility(config: Config, logging_block: Mapping[str, Any]) -> None:
    """Map Docker-style ``logging.options`` onto the log rotation settings."""
    options = logging_block.get("options") or {}
    if "max-size" in options:
        try:
            size = parse_docker_size(options["max-size"])
            if size > 0:
                config.log.max_size = size
        except ValueError as e:
            logger.warning(f"Ignoring logging option max-size: {e}")
    if "max-file" in options:
        try:
            backups = int(options["max-file"])
            if backups > 0:
                config.log.max_backups = backups
        except ValueError:
            logger.warning(f"Ignoring logging option max-file: {options['max-file']!r}")


def config_from_dict(data: Mapping[str, Any]) -> Config:
    """Build a Config from an already parsed document, validating it first."""
    try:
        jsonschema.validate(data, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e.message}") from e

    config = Config()
    for key, value in (data.get("docker") or {}).items():
        setattr(config.docker, key, value)

    for key, value in (data.get("updates") or {}).items():
        if key in ("check_interval", "stop_timeout"):
            try:
                value = parse_duration(value)
            except ValueError as e:
                raise ConfigError(f"updates.{key}: {e}") from e
        setattr(config.updates, key, value)

    for key, value in (data.get("cleanup") or {}).items():
        setattr(config.cleanup, key, value)
    for key, value in (data.get("log") or {}).items():
        setattr(config.log, key, value)

    notifications = data.get("notifications") or {}
    config.notifications = NotificationsConfig(
        ntfy=notifications.get("ntfy"),
        webhook=notifications.get("webhook"),
    )

    if data.get("logging"):
        _apply_logging_compatibility(config, data["logging"])
    return config


def load_config(path: Union[str, Path]) -> Config:
    """Load configuration from a JSON file, or return defaults if it is absent."""
    path = Path(path)
    if not path.exists():
        logger.debug(f"Config file {path} not found, using defaults")
        return Config()
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    return config_from_dict(data)


def _parse_bool(value: str) -> Optional[bool]:
    value = value.strip().lower()
    if value in ("1", "t", "true", "yes", "on"):
        return True
    if value in ("0", "f", "false", "no", "off"):
        return False
    return None


def apply_env_overrides(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Apply ``HARBORBUDDY_*`` environment variables on top of ``config``.

    Unparsable values are logged and ignored so a typo in one variable does
    not discard the rest.  ``HARBORBUDDY_TIMEZONE`` beats the standard ``TZ``.
    """
    env = os.environ if environ is None else environ

    def duration(name: str) -> Optional[float]:
        try:
            return parse_duration(env[name])
        except ValueError:
            logger.warning(f"Ignoring {name}={env[name]!r}: not a valid duration")
            return None

    def boolean(name: str) -> Optional[bool]:
        parsed = _parse_bool(env[name])
        if parsed is None:
            logger.warning(f"Ignoring {name}={env[name]!r}: not a boolean")
        return parsed

    def integer(name: str) -> Optional[int]:
        try:
            return int(env[name])
        except ValueError:
            logger.warning(f"Ignoring {name}={env[name]!r}: not an integer")
            return None

    if env.get("HARBORBUDDY_DOCKER_HOST"):
        config.docker.host = env["HARBORBUDDY_DOCKER_HOST"]
    if env.get("HARBORBUDDY_INTERVAL"):
        value = duration("HARBORBUDDY_INTERVAL")
        if value is not None:
            config.updates.check_interval = value
    if env.get("HARBORBUDDY_SCHEDULE_TIME"):
        config.updates.schedule_time = env["HARBORBUDDY_SCHEDULE_TIME"]
    if env.get("HARBORBUDDY_TIMEZONE"):
        config.updates.timezone = env["HARBORBUDDY_TIMEZONE"]
    elif env.get("TZ"):
        config.updates.timezone = env["TZ"]
    if env.get("HARBORBUDDY_DRY_RUN"):
        value = boolean("HARBORBUDDY_DRY_RUN")
        if value is not None:
            config.updates.dry_run = value
    if env.get("HARBORBUDDY_STOP_TIMEOUT"):
        value = duration("HARBORBUDDY_STOP_TIMEOUT")
        if value is not None:
            config.updates.stop_timeout = value
    if env.get("HARBORBUDDY_LOG_LEVEL"):
        config.log.level = env["HARBORBUDDY_LOG_LEVEL"].lower()
    if env.get("HARBORBUDDY_LOG_JSON"):
        value = boolean("HARBORBUDDY_LOG_JSON")
        if value is not None:
            config.log.json = value
    if env.get("HARBORBUDDY_LOG_FILE"):
        config.log.file = env["HARBORBUDDY_LOG_FILE"]
    if env.get("HARBORBUDDY_LOG_MAX_SIZE"):
        value = integer("HARBORBUDDY_LOG_MAX_SIZE")
        if value is not None:
            config.log.max_size = value
    if env.get("HARBORBUDDY_LOG_MAX_BACKUPS"):
        value = integer("HARBORBUDDY_LOG_MAX_BACKUPS")
        if value is not None:
            config.log.max_backups = value
    return config


def parse_schedule_time(value: str):
    """Parse ``HH:MM`` into ``(hour, minute)``; raises ValueError otherwise."""
    if not re.fullmatch(r"\d{1,2}:\d{2}", value or ""):
        raise ValueError(f"invalid schedule_time format: {value!r}")
    parsed = datetime.strptime(value, "%H:%M")
    return parsed.hour, parsed.minute


def load_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, raising ConfigError when it is unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(
            f"invalid timezone: {name} (use IANA timezone names like "
            f"'America/Los_Angeles' or 'UTC')"
        ) from e


def validate(config: Config) -> None:
    """Check cross-field rules the schema cannot express."""
    if not config.docker.host:
        raise ConfigError("docker.host cannot be empty")

    updates = config.updates
    if not updates.schedule_time and updates.check_interval <= 0:
        raise ConfigError("updates.check_interval must be positive when schedule_time is not set")
    if updates.stop_timeout <= 0:
        raise ConfigError("updates.stop_timeout must be positive")

    if updates.schedule_time:
        try:
            parse_schedule_time(updates.schedule_time)
        except ValueError:
            raise ConfigError(
                f"invalid schedule_time format: {updates.schedule_time} "
                f"(must be HH:MM, e.g., '03:00')"
            ) from None
        load_timezone(updates.timezone)
        if updates.check_interval != DEFAULT_CHECK_INTERVAL:
            logger.warning(
                f"Both schedule_time and check_interval are set; running daily at "
                f"{updates.schedule_time} and ignoring check_interval"
            )

    if config.cleanup.min_age_hours < 0:
        raise ConfigError("cleanup.min_age_hours cannot be negative")

    if config.log.level not in LOG_LEVELS:
        raise ConfigError(
            f"invalid log level: {config.log.level} (must be debug, info, warn, or error)"
        )
