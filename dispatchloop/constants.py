"""Constants used across dispatchloop.

Internal tunables that are not part of the user-facing configuration.
"""

# State file
STATE_VERSION = 2
MAX_PROCESSED_EVENTS = 200  # Ledger keeps only the most recent N event keys

# Advisory lock timings (seconds)
LOCK_RETRY_SECONDS = 0.05
LOCK_WAIT_SECONDS = 10.0
LOCK_STALE_SECONDS = 30.0

# Pipeline defaults
DEFAULT_MAX_REWORK_ATTEMPTS = 2
DEFAULT_EXECUTION_PROFILE = "default"
DEFAULT_WORKER_TIMEOUT_MS = 60 * 60_000
DEFAULT_AUDIT_TIMEOUT_MS = 30 * 60_000
WORKSPACE_PROMPTS_RELPATH = ".dispatch/prompts.yaml"
GUIDANCE_MAX_CHARS = 2000
STUCK_REASON_MAX_CHARS = 500

# Stuck reasons
WATCHDOG_STUCK_REASON = "watchdog_kill"
ZOMBIE_STUCK_REASON = "zombie_session"

# Monitor defaults (seconds)
MONITOR_INTERVAL_S = 5 * 60
MONITOR_STALE_AFTER_S = 2 * 60 * 60
MONITOR_ZOMBIE_AFTER_S = 30 * 60
MONITOR_COMPLETED_RETENTION_S = 7 * 24 * 60 * 60

# Artifact trail limits
ARTIFACT_DIR_NAME = ".dispatch"
MAX_ARTIFACT_CHARS = 8192
MAX_PREVIEW_CHARS = 500
MAX_PROMPT_PREVIEW_CHARS = 200
