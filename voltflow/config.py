from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_FILE = "voltflow.yaml"


class StorageConfig(BaseModel):
    """Where execution history is persisted."""

    backend: Literal["inmemory", "sqlite"] = "inmemory"
    path: str = "voltflow.db"


class EventQueueConfig(BaseModel):
    """Bounds and retry policy of the lifecycle event queue."""

    max_size: int = Field(default=1000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=1.5, ge=0)
    jitter: float = Field(default=0.5, ge=0)


class VoltflowConfig(BaseModel):
    """Top-level configuration model."""

    storage: StorageConfig = StorageConfig()
    events: EventQueueConfig = EventQueueConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> VoltflowConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the VOLTFLOW_CONFIG
            env variable or 'voltflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("VOLTFLOW_CONFIG", DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = VoltflowConfig(**data)
    else:
        config = VoltflowConfig()

    env_db_url = os.getenv("VOLTFLOW_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("VOLTFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config
