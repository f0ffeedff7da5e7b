from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from foreman import config
from foreman.dispatcher import Dispatcher
from foreman.errors import ConfigError
from foreman.sql_store import SqlJobStore
from foreman.store import InMemoryJobStore


def _write_config(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "foreman.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_defaults(tmp_path: Path) -> None:
    settings = config.load_settings(_write_config(tmp_path, {}))
    assert settings.database_url is None
    assert settings.worker_name == "foreman"
    assert settings.poll_seconds == 10
    assert settings.max_workers == 4
    assert settings.default_job_timeout == timedelta(hours=6)
    assert settings.log_file == tmp_path / "foreman.log"
    assert settings.principals == {}
    assert isinstance(config.open_store(settings), InMemoryJobStore)


def test_full_config(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        {
            "database_url": f"sqlite:///{tmp_path / 'jobs.db'}",
            "worker_name": "node-1",
            "poll_seconds": 5,
            "max_workers": 8,
            "default_job_timeout": "90m",
            "log_file": "logs/run.log",
            "principals": {"alice": ["etl"], "etl": None},
        },
    )
    settings = config.load_settings(path)
    assert settings.worker_name == "node-1"
    assert settings.default_job_timeout == timedelta(minutes=90)
    assert settings.log_file == tmp_path / "logs" / "run.log"
    assert settings.principals == {"alice": ("etl",), "etl": ()}

    store = config.open_store(settings)
    assert isinstance(store, SqlJobStore)
    registry = config.build_registry(settings, store)
    job = registry.insert_job("alice", "VACUUM", "prod", principal="etl")
    assert job.timeout == timedelta(minutes=90)
    store.close()


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"poll_seconds": 0}, "poll_seconds must be >= 1"),
        ({"max_workers": "4"}, "max_workers must be an integer"),
        ({"max_workers": True}, "max_workers must be an integer"),
        ({"default_job_timeout": "30s"}, "must be in format <number><m\\|h\\|d>, got \"30s\""),
        ({"default_job_timeout": "soon"}, "must be in format <number><m\\|h\\|d>"),
        ({"default_job_timeout": "0h"}, "default_job_timeout must be > 0"),
        ({"worker_name": " "}, "worker_name must be a non-empty string"),
        ({"principals": ["alice"]}, "principals must be a mapping"),
        ({"principals": {"alice": "etl"}}, "principals.alice must be a list"),
        ({"principals": {"alice": [""]}}, "principals.alice\\[0\\] must be a non-empty string"),
        ({"schedule": "@daily"}, "Unknown config key\\(s\\): schedule"),
    ],
)
def test_invalid_values_rejected(tmp_path: Path, payload: dict, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        config.load_settings(_write_config(tmp_path, payload))


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Top-level config must be a mapping"):
        config.load_settings(_write_config(tmp_path, ["a"]))


def test_missing_and_broken_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        config.load_settings(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("a: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        config.load_settings(broken)


def test_setup_logging_is_idempotent(tmp_path: Path) -> None:
    logger = logging.getLogger("foreman")
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    try:
        first = config.setup_logging(tmp_path / "a.log")
        second = config.setup_logging(tmp_path / "b.log")
        assert first is second
        assert len(first.handlers) == 2
        assert not (tmp_path / "b.log").exists()
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        for handler in saved:
            logger.addHandler(handler)


def test_dispatcher_from_config(tmp_path: Path) -> None:
    path = _write_config(tmp_path, {"worker_name": "node-2", "max_workers": 2, "poll_seconds": 3})
    logger = logging.getLogger("foreman")
    saved = list(logger.handlers)
    try:
        dispatcher = Dispatcher.from_config(path, lambda job: None)
        assert dispatcher.worker_name == "node-2"
        assert dispatcher.poll_seconds == 3
        assert isinstance(dispatcher.store, InMemoryJobStore)
        dispatcher.close()
    finally:
        for handler in list(logger.handlers):
            if handler not in saved:
                handler.close()
                logger.removeHandler(handler)
