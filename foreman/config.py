"""YAML settings, logging setup and store construction."""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from foreman.errors import ConfigError
from foreman.jobs import DEFAULT_JOB_TIMEOUT
from foreman.principals import StaticPrincipalDirectory
from foreman.registry import JobRegistry
from foreman.sql_store import SqlJobStore
from foreman.store import InMemoryJobStore, JobStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_LOG_FILE = "foreman.log"
DEFAULT_WORKER_NAME = "foreman"
DEFAULT_POLL_SECONDS = 10
DEFAULT_MAX_WORKERS = 4
INTERVAL_RE = re.compile(r"^(\d+)([mhd])$")
KNOWN_KEYS = {
    "database_url",
    "worker_name",
    "poll_seconds",
    "max_workers",
    "default_job_timeout",
    "log_file",
    "principals",
}
INTERVAL_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


@dataclass(frozen=True)
class ForemanSettings:
    database_url: Optional[str] = None
    worker_name: str = DEFAULT_WORKER_NAME
    poll_seconds: int = DEFAULT_POLL_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    default_job_timeout: timedelta = DEFAULT_JOB_TIMEOUT
    log_file: Path = Path(DEFAULT_LOG_FILE)
    principals: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


def setup_logging(log_file: Union[str, Path] = DEFAULT_LOG_FILE) -> logging.Logger:
    root = logging.getLogger("foreman")
    if root.handlers:
        return root
    root.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return root


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_interval(value: Any, field_path: str) -> timedelta:
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be interval string like 5m, 2h, 1d.")
    match = INTERVAL_RE.match(value.strip().lower())
    if not match:
        raise ConfigError(f'Error: {field_path} must be in format <number><m|h|d>, got "{value}".')
    amount = int(match.group(1))
    unit = match.group(2)
    if amount <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return timedelta(**{INTERVAL_UNITS[unit]: amount})


def parse_principals(raw: Any, field_path: str = "principals") -> Dict[str, Tuple[str, ...]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping of principal to roles.")
    out: Dict[str, Tuple[str, ...]] = {}
    for name, roles in raw.items():
        principal = ensure_str(name, f"{field_path} key")
        roles_path = f"{field_path}.{principal}"
        if roles is None:
            roles = []
        if not isinstance(roles, list):
            raise ConfigError(f"Error: {roles_path} must be a list of role names.")
        out[principal] = tuple(ensure_str(role, f"{roles_path}[{idx}]") for idx, role in enumerate(roles))
    return out


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def load_settings(config_path: Union[str, Path] = DEFAULT_CONFIG) -> ForemanSettings:
    path = Path(config_path)
    payload = _load_config_payload(path)

    unknown = sorted(str(key) for key in payload if key not in KNOWN_KEYS)
    if unknown:
        raise ConfigError(f"Error: Unknown config key(s): {', '.join(unknown)}.")

    database_url = payload.get("database_url")
    if database_url is not None:
        database_url = ensure_str(database_url, "database_url")

    worker_name = payload.get("worker_name")
    worker_name = DEFAULT_WORKER_NAME if worker_name is None else ensure_str(worker_name, "worker_name")

    timeout_raw = payload.get("default_job_timeout")
    default_job_timeout = DEFAULT_JOB_TIMEOUT if timeout_raw is None else parse_interval(timeout_raw, "default_job_timeout")

    log_raw = payload.get("log_file")
    log_file = Path(DEFAULT_LOG_FILE if log_raw is None else ensure_str(log_raw, "log_file"))
    if not log_file.is_absolute():
        log_file = path.parent / log_file

    return ForemanSettings(
        database_url=database_url,
        worker_name=worker_name,
        poll_seconds=ensure_int(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS),
        max_workers=ensure_int(payload.get("max_workers"), "max_workers", DEFAULT_MAX_WORKERS),
        default_job_timeout=default_job_timeout,
        log_file=log_file,
        principals=parse_principals(payload.get("principals")),
    )


def open_store(settings: ForemanSettings) -> JobStore:
    if settings.database_url is None:
        logger.info("No database_url configured; using an in-memory job store.")
        return InMemoryJobStore()
    return SqlJobStore(settings.database_url)


def build_directory(settings: ForemanSettings) -> StaticPrincipalDirectory:
    return StaticPrincipalDirectory(settings.principals)


def build_registry(settings: ForemanSettings, store: JobStore) -> JobRegistry:
    return JobRegistry(store, build_directory(settings), default_timeout=settings.default_job_timeout)
