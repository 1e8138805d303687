"""
Configuration for Memory Mesh.

Defaults come from the environment so a deployment can relocate data
without code changes. Every component also takes explicit arguments,
which always win over these values.
"""

import os
from pathlib import Path
from typing import Optional

# =============================================================================
# Environment
# =============================================================================

HOME_ENV = "MEMORY_MESH_HOME"
SCOPE_ENV = "MEMORY_MESH_SCOPE"
BATCH_ENV = "MEMORY_MESH_BATCH_MS"

DEFAULT_HOME = "~/.memory-mesh"
DEFAULT_SCOPE = "default"
DEFAULT_BATCH_WINDOW_MS = 100

# Per-scope subdirectories
GLOBAL_SUBDIR = "global"
FEEDBACK_SUBDIR = "feedback"
CALIBRATION_SUBDIR = "calibration"


def get_home(home: Optional[str] = None) -> Path:
    """Root directory holding every scope."""
    if home is None:
        home = os.environ.get(HOME_ENV, DEFAULT_HOME)
    return Path(home).expanduser()


def get_scope(scope: Optional[str] = None) -> str:
    """Scope name (a user or machine)."""
    return scope or os.environ.get(SCOPE_ENV, DEFAULT_SCOPE)


def get_scope_dir(scope: Optional[str] = None, home: Optional[str] = None) -> Path:
    return get_home(home) / get_scope(scope)


def get_batch_window_ms() -> int:
    """Debounce window for store writes; 0 disables batching."""
    raw = os.environ.get(BATCH_ENV)
    if raw is None:
        return DEFAULT_BATCH_WINDOW_MS
    try:
        return max(0, int(raw))
    except ValueError:
        return DEFAULT_BATCH_WINDOW_MS
