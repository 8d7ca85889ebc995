"""Tests for configuration loading."""

import pytest

import stepengine.persistence as persistence
from stepengine.config import load_config
from stepengine.persistence import (
    InMemoryProcessStepRepository,
    SQLiteProcessStepRepository,
    create_process_step_repository,
    get_repositories,
)


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    monkeypatch.setattr(persistence, "_repositories_instance", None)
    monkeypatch.delenv("STEPENGINE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("STEPENGINE_CONFIG", str(tmp_path / "missing.yaml"))


def test_defaults_without_config_file():
    config = load_config()
    assert config.database_url is None
    assert config.worker.lock_expiry_seconds == 300
    assert config.worker.page_size == 100


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/steps.db
worker:
  lock_expiry_seconds: 60
  poll_interval_seconds: 2
  page_size: 25
"""
    )
    monkeypatch.setenv("STEPENGINE_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite:///tmp/steps.db"
    assert config.worker.lock_expiry_seconds == 60
    assert config.worker.poll_interval_seconds == 2
    assert config.worker.page_size == 25


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///tmp/from-file.db\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/from-env.db")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite:///tmp/from-env.db"


def test_get_repositories_uses_config(tmp_path, monkeypatch):
    db_path = tmp_path / "steps.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database_url: sqlite://{db_path}\n")
    monkeypatch.setenv("STEPENGINE_CONFIG", str(config_path))

    repositories = get_repositories()
    assert isinstance(repositories.process_steps, SQLiteProcessStepRepository)
    assert get_repositories() is repositories
    repositories.process_steps.close()


def test_get_repositories_defaults_to_memory():
    repositories = get_repositories()
    assert isinstance(repositories.process_steps, InMemoryProcessStepRepository)


def test_unsupported_backend_is_rejected():
    with pytest.raises(ValueError):
        create_process_step_repository("mysql://localhost/steps")
