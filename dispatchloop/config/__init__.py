"""Pipeline configuration.

Environment:
    DISPATCHLOOP_ENV_PATH: .env file loaded before reading config (default ~/.dispatchloop/.env).
    DISPATCHLOOP_CONFIG: config file path (default ~/.dispatchloop/config.yml).
    DISPATCHLOOP_STATE_PATH: dispatch state file, overrides ``state_path``.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from dispatchloop.config.loader import load_config, load_pipeline_config_file
from dispatchloop.config.schema import (
    LockConfig,
    MonitorConfig,
    NotificationsConfig,
    NotifyTargetConfig,
    PipelineConfig,
)
from dispatchloop.paths import DEFAULT_CONFIG_PATH, DEFAULT_STATE_PATH, DISPATCHLOOP_HOME


def load_pipeline_config(path: Optional[Path] = None) -> PipelineConfig:
    """Load .env, then the YAML config named by *path* or ``DISPATCHLOOP_CONFIG``."""
    env_path = os.getenv("DISPATCHLOOP_ENV_PATH")
    load_dotenv(Path(env_path).expanduser() if env_path else DISPATCHLOOP_HOME / ".env")

    if path is None:
        configured = os.getenv("DISPATCHLOOP_CONFIG")
        path = Path(configured).expanduser() if configured else DEFAULT_CONFIG_PATH
    return load_pipeline_config_file(path)


def resolve_state_path(config: PipelineConfig) -> Path:
    """Get the dispatch state path (env var wins for test isolation)."""
    env_path = os.getenv("DISPATCHLOOP_STATE_PATH")
    if env_path:
        return Path(env_path).expanduser()
    if config.state_path:
        return Path(config.state_path).expanduser()
    return DEFAULT_STATE_PATH


def resolve_prompts_path(config: PipelineConfig) -> Optional[Path]:
    if not config.prompts_path:
        return None
    return Path(config.prompts_path).expanduser()


__all__ = [
    "LockConfig",
    "MonitorConfig",
    "NotificationsConfig",
    "NotifyTargetConfig",
    "PipelineConfig",
    "load_config",
    "load_pipeline_config",
    "resolve_prompts_path",
    "resolve_state_path",
]
