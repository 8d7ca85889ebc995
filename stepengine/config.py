from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class WorkerConfig(BaseModel):
    """Settings for the process execution worker loop."""

    lock_expiry_seconds: float = Field(default=300, gt=0)
    poll_interval_seconds: float = Field(default=10, ge=0)
    page_size: int = Field(default=100, ge=1)
    max_backoff_attempts: int = Field(default=6, ge=0)


class StepEngineConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    worker: WorkerConfig = WorkerConfig()


def load_config(path: Optional[str] = None) -> StepEngineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPENGINE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPENGINE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepEngineConfig(**data)
    else:
        config = StepEngineConfig()

    env_db_url = os.getenv("STEPENGINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
