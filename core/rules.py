"""
ENGINE RULES - Layer 0 (Immutable)

Timing and sizing constants shared by the acquisition engine, the broadcast
hub and run control. Not configurable at runtime.
"""

from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True)
class EngineRules:
    """Frozen dataclass = immutable at runtime."""

    # --- RETRY TOPOLOGY ---
    BACKOFF_SECONDS: Final[float] = 1.0               # Fixed backoff between stage retries
    PUSH_RETRY_SECONDS: Final[float] = 1.0            # Backoff between push-notification attempts

    # --- BROADCAST ---
    HEARTBEAT_INTERVAL_SECONDS: Final[float] = 30.0   # Observer silence before a synthetic ping
    LOG_HISTORY_SIZE: Final[int] = 100                # Recent log entries kept for late readers
    OBSERVER_INBOX_SIZE: Final[int] = 256             # Per-observer queue; oldest dropped when full

    # --- TIME FORMATS ---
    LOG_TIME_FORMAT: Final[str] = "%H:%M:%S"


RULES = EngineRules()
