from __future__ import annotations

from pathlib import Path

DISPATCHLOOP_HOME = (Path("~") / ".dispatchloop").expanduser()
DEFAULT_STATE_PATH = DISPATCHLOOP_HOME / "dispatch-state.json"
DEFAULT_CONFIG_PATH = DISPATCHLOOP_HOME / "config.yml"
