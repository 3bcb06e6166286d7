"""Tests for configuration loading and store selection."""

import pytest

import stepwise.persistence as persistence
from stepwise.config import load_config
from stepwise.persistence import (
    InMemoryRunStore,
    SQLiteHookStore,
    SQLiteRunStore,
    get_hook_store,
    get_run_store,
)


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    for name in ("STEPWISE_DATABASE_URL", "DATABASE_URL", "STEPWISE_WORKFLOWS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STEPWISE_CONFIG", str(tmp_path / "absent.yaml"))
    persistence.reset_stores()
    yield
    persistence.reset_stores()


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite://runs.db
workflows_module: myapp.workflows
engine:
  conflict_retries: 5
  default_step_timeout: 30
server:
  port: 9000
"""
    )
    monkeypatch.setenv("STEPWISE_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite://runs.db"
    assert config.workflows_module == "myapp.workflows"
    assert config.engine.conflict_retries == 5
    assert config.engine.default_step_timeout == 30
    assert config.engine.backoff_base == 0.05
    assert config.server.port == 9000
    assert config.server.host == "127.0.0.1"


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://file.db\n")
    monkeypatch.setenv("DATABASE_URL", "sqlite://env.db")
    monkeypatch.setenv("STEPWISE_WORKFLOWS", "other.workflows")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite://env.db"
    assert config.workflows_module == "other.workflows"


def test_defaults_without_file():
    config = load_config()
    assert config.database_url is None
    assert config.workflows_module is None


def test_stores_default_to_memory():
    store = get_run_store()
    assert isinstance(store, InMemoryRunStore)
    assert get_run_store() is store


def test_stores_follow_database_url(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_DATABASE_URL", f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(get_run_store(), SQLiteRunStore)
    assert isinstance(get_hook_store(), SQLiteHookStore)


def test_unsupported_backend():
    with pytest.raises(ValueError):
        get_run_store("mysql://localhost/db")
