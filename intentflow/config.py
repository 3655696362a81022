from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_UNIT_SECONDS,
    DEFAULT_STALE_JOB_SECONDS,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    MAX_JOB_RETRIES,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Retry and sweep settings for the job processor and scheduler."""

    max_retries: int = MAX_JOB_RETRIES
    backoff_unit_seconds: float = DEFAULT_BACKOFF_UNIT_SECONDS
    backoff_strategy: Literal["linear", "exponential"] = "linear"
    backoff_jitter_seconds: float = 0.0
    stale_job_seconds: float = DEFAULT_STALE_JOB_SECONDS


class ActionsConfig(BaseModel):
    """Settings consumed by outbound step actions."""

    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: Optional[str] = None
    default_sender_email: str = "onboarding@resend.dev"
    default_sender_name: Optional[str] = None


class IntentflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    actions: ActionsConfig = ActionsConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> IntentflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to INTENTFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("INTENTFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = IntentflowConfig(**data)
    else:
        config = IntentflowConfig()

    env_db_url = os.getenv("INTENTFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_api_key = os.getenv("RESEND_API_KEY")
    if env_api_key:
        config.actions.email_api_key = env_api_key
    return config
