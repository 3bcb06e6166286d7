from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel


class EngineConfig(BaseModel):
    """Engine tuning knobs."""

    conflict_retries: int = 3
    backoff_base: float = 0.05
    backoff_jitter: float = 0.05
    default_step_timeout: Optional[float] = None


class ServerConfig(BaseModel):
    """HTTP server binding."""

    host: str = "127.0.0.1"
    port: int = 8000


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    workflows_module: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    server: ServerConfig = ServerConfig()


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'stepwise.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "stepwise.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_module = os.getenv("STEPWISE_WORKFLOWS")
    if env_module:
        config.workflows_module = env_module
    return config
