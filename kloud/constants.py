"""Centralized constants for kloud.

Polling values here are only defaults; every one of them can be overridden
through ``[wait]`` in the TOML configuration.
"""

from __future__ import annotations

from typing import Final

NAME: Final = "kloud"
VERSION: Final = "0.1.0"

# =============================================================================
# Wait-state defaults
# =============================================================================

DEFAULT_WAIT_ATTEMPTS: Final = 60
DEFAULT_WAIT_INTERVAL: Final = 3.0
DEFAULT_WAIT_TIMEOUT: Final[float | None] = None

# =============================================================================
# Eventer
# =============================================================================

DEFAULT_MAX_EVENTS: Final = 1024

# =============================================================================
# Key pairs
# =============================================================================

DEFAULT_KEY_NAME: Final = "kloud-deployment"

# =============================================================================
# Configuration files
# =============================================================================

GLOBAL_CONFIG_DIR: Final = ".kloud"
GLOBAL_CONFIG_NAME: Final = "defaults.toml"
PROJECT_CONFIG_NAME: Final = "kloud.toml"
