"""Tests for configuration loading."""

from voltflow.config import load_config
from voltflow.events import WorkflowEventQueue
from voltflow.persistence import SQLiteWorkflowStorage, get_storage


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
storage:
  backend: sqlite
  path: history.db
events:
  max_size: 10
  max_retries: 5
log_level: DEBUG
"""
    )
    monkeypatch.setenv("VOLTFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("VOLTFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("VOLTFLOW_LOG_LEVEL", raising=False)

    config = load_config()
    assert config.storage.backend == "sqlite"
    assert config.storage.path == "history.db"
    assert config.events.max_size == 10
    assert config.events.max_retries == 5
    assert config.events.backoff_base == 1.5
    assert config.log_level == "DEBUG"
    assert config.database_url is None


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("VOLTFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("VOLTFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("VOLTFLOW_LOG_LEVEL", raising=False)

    config = load_config()
    assert config.storage.backend == "inmemory"
    assert config.events.max_size == 1000
    assert config.log_level == "INFO"


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\nlog_level: INFO\n")
    monkeypatch.setenv("VOLTFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("VOLTFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    monkeypatch.setenv("VOLTFLOW_LOG_LEVEL", "warning")

    config = load_config()
    assert config.database_url == f"sqlite://{tmp_path / 'env.db'}"
    assert config.log_level == "WARNING"


def test_storage_and_queue_use_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"""
storage:
  backend: sqlite
  path: {tmp_path / 'configured.db'}
events:
  max_size: 3
  jitter: 0
"""
    )
    monkeypatch.setenv("VOLTFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("VOLTFLOW_DATABASE_URL", raising=False)

    config = load_config()
    storage = get_storage()
    assert isinstance(storage, SQLiteWorkflowStorage)
    assert storage.db_path == str(tmp_path / "configured.db")
    storage.close()

    queue = WorkflowEventQueue.from_config(config.events)
    assert queue.jitter == 0
