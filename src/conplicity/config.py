from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping
import os
import re
import socket
from urllib.parse import urlparse

import yaml

KNOWN_ENGINES = ("duplicity", "restic", "rclone")
RETRY_BACKOFF_MODES = ("fixed", "exponential")

_DURATION_PART = re.compile(r"(\d+)([smhdw])")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_CREDENTIAL_FIELDS = frozenset(
    {"aws_access_key_id", "aws_secret_access_key", "swift_username", "swift_password", "restic_password"}
)


class ConfigurationError(RuntimeError):
    """Raised when the run cannot start because configuration is incomplete."""


@dataclass(frozen=True)
class AppConfig:
    target_url: str = ""
    engine: str = "duplicity"
    duplicity_image: str = "camptocamp/duplicity:latest"
    restic_image: str = "restic/restic:latest"
    rclone_image: str = "rclone/rclone:latest"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    swift_username: str = ""
    swift_password: str = ""
    swift_auth_url: str = ""
    swift_tenant_name: str = ""
    swift_region_name: str = ""
    restic_password: str = ""
    full_if_older_than: str = "15D"
    remove_older_than: str = "30D"
    check_every: str = "24h"
    hostname: str = ""
    docker_host: str = "unix:///var/run/docker.sock"
    worker_timeout_seconds: int = 0
    poll_interval_seconds: float = 1.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 2.0
    retry_backoff: str = "fixed"
    max_workers: int = 1
    metadata_db_path: Path = Path("./data/conplicity.db")
    pushgateway_url: str = ""
    log_level: str = "INFO"

    def image_for(self, engine: str) -> str:
        images = {
            "duplicity": self.duplicity_image,
            "restic": self.restic_image,
            "rclone": self.rclone_image,
        }
        try:
            return images[engine]
        except KeyError as error:
            raise ConfigurationError(f"unknown backup engine: {engine}") from error


_ENV_FIELDS: dict[str, tuple[str, ...]] = {
    "target_url": ("CONPLICITY_TARGET_URL", "DUPLICITY_TARGET_URL"),
    "engine": ("CONPLICITY_ENGINE",),
    "duplicity_image": ("DUPLICITY_DOCKER_IMAGE",),
    "restic_image": ("RESTIC_DOCKER_IMAGE",),
    "rclone_image": ("RCLONE_DOCKER_IMAGE",),
    "aws_access_key_id": ("AWS_ACCESS_KEY_ID",),
    "aws_secret_access_key": ("AWS_SECRET_ACCESS_KEY",),
    "swift_username": ("SWIFT_USERNAME",),
    "swift_password": ("SWIFT_PASSWORD",),
    "swift_auth_url": ("SWIFT_AUTHURL",),
    "swift_tenant_name": ("SWIFT_TENANTNAME",),
    "swift_region_name": ("SWIFT_REGIONNAME",),
    "restic_password": ("RESTIC_PASSWORD",),
    "full_if_older_than": ("FULL_IF_OLDER_THAN",),
    "remove_older_than": ("REMOVE_OLDER_THAN",),
    "check_every": ("CONPLICITY_CHECK_EVERY",),
    "hostname": ("CONPLICITY_HOSTNAME",),
    "docker_host": ("DOCKER_HOST",),
    "worker_timeout_seconds": ("CONPLICITY_WORKER_TIMEOUT_SECONDS",),
    "poll_interval_seconds": ("CONPLICITY_POLL_INTERVAL_SECONDS",),
    "retry_attempts": ("CONPLICITY_RETRY_ATTEMPTS",),
    "retry_delay_seconds": ("CONPLICITY_RETRY_DELAY_SECONDS",),
    "retry_backoff": ("CONPLICITY_RETRY_BACKOFF",),
    "max_workers": ("CONPLICITY_MAX_WORKERS",),
    "metadata_db_path": ("CONPLICITY_METADATA_DB_PATH",),
    "pushgateway_url": ("PUSHGATEWAY_URL",),
    "log_level": ("CONPLICITY_LOG_LEVEL",),
}


def load_config(environ: Mapping[str, str] | None = None, config_path: str | Path | None = None) -> AppConfig:
    """Build the run configuration from environment variables and an optional YAML file.

    File values take precedence over environment values. Unset credentials stay
    empty strings so that they are passed through to workers as empty entries.
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    for field_name, variables in _ENV_FIELDS.items():
        for variable in variables:
            value = environ.get(variable)
            if value is not None and value.strip():
                raw[field_name] = value if field_name in _CREDENTIAL_FIELDS else value.strip()
                break

    if config_path:
        raw.update(_read_config_file(Path(config_path)))

    if not raw.get("hostname"):
        raw["hostname"] = socket.gethostname()

    return _coerce(raw)


def validate_config(config: AppConfig) -> None:
    errors: list[str] = []

    parsed_target = urlparse(config.target_url)
    if not config.target_url.strip():
        errors.append("a backup target URL is required (CONPLICITY_TARGET_URL)")
    elif not parsed_target.scheme:
        errors.append(f"target URL '{config.target_url}' has no scheme")

    if config.engine not in KNOWN_ENGINES:
        errors.append(f"unknown backup engine '{config.engine}' (expected one of {', '.join(KNOWN_ENGINES)})")
    if config.engine == "restic" and not config.restic_password:
        errors.append("restic requires a repository password (RESTIC_PASSWORD)")

    if config.retry_attempts < 1:
        errors.append("retry_attempts must be >= 1")
    if config.retry_delay_seconds < 0:
        errors.append("retry_delay_seconds must be >= 0")
    if config.retry_backoff not in RETRY_BACKOFF_MODES:
        errors.append(f"retry_backoff must be one of {', '.join(RETRY_BACKOFF_MODES)}")
    if config.worker_timeout_seconds < 0:
        errors.append("worker_timeout_seconds must be >= 0")
    if config.poll_interval_seconds <= 0:
        errors.append("poll_interval_seconds must be positive")
    if config.max_workers < 1:
        errors.append("max_workers must be >= 1")

    try:
        parse_duration(config.check_every)
    except ValueError as error:
        errors.append(str(error))

    if errors:
        raise ConfigurationError("invalid configuration: " + "; ".join(errors))


def parse_duration(value: str) -> int:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("duration must not be empty")

    position = 0
    total = 0
    for match in _DURATION_PART.finditer(normalized):
        if match.start() != position:
            break
        total += int(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(normalized):
        raise ValueError(f"invalid duration '{value}' (expected e.g. 24h, 1d12h, 30m)")
    return total


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        content = path.expanduser().read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigurationError(f"unable to read config file {path}: {error}") from error

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise ConfigurationError(f"config file {path} must be valid YAML: {error.__class__.__name__}") from error

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"config file {path} must be a YAML mapping")

    known = {field.name for field in fields(AppConfig)}
    unknown = sorted(str(key) for key in parsed if key not in known)
    if unknown:
        raise ConfigurationError(f"config file {path} has unknown option(s): {', '.join(unknown)}")
    return {key: value for key, value in parsed.items() if value is not None}


def _coerce(raw: Mapping[str, Any]) -> AppConfig:
    config = AppConfig()
    values: dict[str, Any] = {}
    for field in fields(AppConfig):
        if field.name not in raw:
            continue
        default = getattr(config, field.name)
        value = raw[field.name]
        try:
            if isinstance(default, Path):
                values[field.name] = Path(str(value)).expanduser()
            elif isinstance(default, int):
                values[field.name] = int(value)
            elif isinstance(default, float):
                values[field.name] = float(value)
            else:
                values[field.name] = str(value)
        except (TypeError, ValueError) as error:
            raise ConfigurationError(f"option '{field.name}' has an invalid value: {value!r}") from error

    values["engine"] = str(values.get("engine", config.engine)).strip().lower()
    return replace(config, **values)
