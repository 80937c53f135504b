"""
Runtime configuration for Ballistic.

Settings are read from environment variables once at startup and passed
explicitly to the components that need them.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# name -> (max requests, window seconds)
DEFAULT_RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "api": (60, 60),
    "mcp": (120, 60),
    "connections": (10, 60),
}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    """Application settings."""

    database_path: str = "ballistic.db"
    legacy_wildcard_cutoff_at: Optional[str] = None
    log_level: str = "INFO"
    sweep_interval_seconds: int = 900
    mcp_token: Optional[str] = None
    rate_limits: Dict[str, Tuple[int, int]] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Recognised variables:
            DATABASE_PATH, MCP_LEGACY_WILDCARD_CUTOFF_AT, BALLISTIC_LOG_LEVEL,
            BALLISTIC_SWEEP_INTERVAL, BALLISTIC_MCP_TOKEN,
            BALLISTIC_RATE_LIMIT_API / _MCP / _CONNECTIONS (requests per minute)
        """
        rate_limits = dict(DEFAULT_RATE_LIMITS)
        for name, (limit, window) in DEFAULT_RATE_LIMITS.items():
            rate_limits[name] = (_int_env(f"BALLISTIC_RATE_LIMIT_{name.upper()}", limit), window)

        return cls(
            database_path=os.getenv("DATABASE_PATH", "ballistic.db"),
            legacy_wildcard_cutoff_at=os.getenv("MCP_LEGACY_WILDCARD_CUTOFF_AT") or None,
            log_level=os.getenv("BALLISTIC_LOG_LEVEL", "INFO").upper(),
            sweep_interval_seconds=_int_env("BALLISTIC_SWEEP_INTERVAL", 900),
            mcp_token=os.getenv("BALLISTIC_MCP_TOKEN") or None,
            rate_limits=rate_limits,
        )
