"""Shared test fixtures for ezcron."""

import json

import pytest

from ezcron.core.bus import EventBus
from ezcron.core.config import EzcronConfig
from ezcron.core.paths import AppPaths
from ezcron.scheduler.history import RunHistory
from ezcron.scheduler.registry import JobRegistry


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep EZCRON_* variables and ./ezcron.toml from leaking into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("EZCRON_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def config(base_dir):
    """Config rooted in a temp dir, fast ticks, no filesystem watcher."""
    return EzcronConfig(
        paths={"base_dir": str(base_dir)},
        scheduler={"tick_interval": 0.05, "shutdown_grace_seconds": 5},
        executor={"grace_seconds": 0.5},
        reload={"watch": False, "debounce_ms": 50},
    )


@pytest.fixture
def paths(config):
    p = config.get_paths()
    p.ensure_dirs()
    return p


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def history():
    return RunHistory()


@pytest.fixture
def write_definition(paths: AppPaths):
    """Write a raw definition document to jobs/<name>.json."""

    def _write(doc, name=None):
        name = name or f"{doc['id']}.json"
        path = paths.jobs_dir / name
        if isinstance(doc, str):
            path.write_text(doc, encoding="utf-8")
        else:
            path.write_text(json.dumps(doc), encoding="utf-8")
        return path

    return _write


def definition(job_id="echo", **overrides):
    """A valid definition document; keyword overrides replace top-level keys."""
    doc = {
        "id": job_id,
        "name": f"{job_id} job",
        "schedule": {"type": "cron", "expression": "* * * * *"},
        "command": {"program": "/bin/echo", "args": ["hi"]},
        "timeout_seconds": 5,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def make_definition():
    return definition
