from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dispatchloop.constants import (
    DEFAULT_AUDIT_TIMEOUT_MS,
    DEFAULT_EXECUTION_PROFILE,
    DEFAULT_MAX_REWORK_ATTEMPTS,
    DEFAULT_WORKER_TIMEOUT_MS,
    MONITOR_COMPLETED_RETENTION_S,
    MONITOR_INTERVAL_S,
    MONITOR_STALE_AFTER_S,
    MONITOR_ZOMBIE_AFTER_S,
    WORKSPACE_PROMPTS_RELPATH,
)
from dispatchloop.notifications.notifier import NOTIFY_KINDS


class LockConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    retry_ms: int = Field(default=50, ge=1)
    timeout_ms: int = Field(default=10_000, ge=0)
    stale_ms: int = Field(default=30_000, ge=1)

    @model_validator(mode="after")
    def validate_stale_window(self) -> "LockConfig":
        if self.stale_ms <= self.retry_ms:
            raise ValueError("lock.stale_ms must be greater than lock.retry_ms")
        return self


class NotifyTargetConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    channel: str
    target: str
    account_id: Optional[str] = None


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    events: Dict[str, bool] = {}
    targets: List[NotifyTargetConfig] = []

    @field_validator("events")
    @classmethod
    def validate_event_kinds(cls, v: Dict[str, bool]) -> Dict[str, bool]:
        unknown = sorted(set(v) - set(NOTIFY_KINDS))
        if unknown:
            raise ValueError(f"Unknown notification events: {unknown}. Expected any of {list(NOTIFY_KINDS)}")
        return v


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    interval_s: int = Field(default=MONITOR_INTERVAL_S, ge=1)
    stale_after_s: int = Field(default=MONITOR_STALE_AFTER_S, ge=60)
    zombie_after_s: int = Field(default=MONITOR_ZOMBIE_AFTER_S, ge=60)
    completed_retention_s: int = Field(default=MONITOR_COMPLETED_RETENTION_S, ge=0)


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_rework_attempts: int = Field(default=DEFAULT_MAX_REWORK_ATTEMPTS, ge=0, le=10)
    execution_profile: str = DEFAULT_EXECUTION_PROFILE
    state_path: Optional[str] = None
    prompts_path: Optional[str] = None
    workspace_prompts_path: str = WORKSPACE_PROMPTS_RELPATH
    worker_timeout_ms: int = Field(default=DEFAULT_WORKER_TIMEOUT_MS, ge=1)
    audit_timeout_ms: int = Field(default=DEFAULT_AUDIT_TIMEOUT_MS, ge=1)
    project_name: Optional[str] = None
    repos: Dict[str, str] = {}
    lock: LockConfig = LockConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    monitor: MonitorConfig = MonitorConfig()

    @field_validator("workspace_prompts_path")
    @classmethod
    def validate_relative_prompts_path(cls, v: str) -> str:
        if v.startswith("/"):
            raise ValueError("workspace_prompts_path must be relative to the workspace")
        return v
