"""Connection state and backoff policy."""

import random
from enum import Enum
from typing import Callable


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    HEALTH_CHECK_FAILED = "health_check_failed"
    RECONNECTING = "reconnecting"


class ConnectionMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    WEBSOCKET = "websocket"


DEFAULT_MODE = ConnectionMode.WEBSOCKET
JITTER = 0.25


def calculate_backoff(
    attempt: int,
    base: float = 1.0,
    cap: float = 10.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number `attempt` (0-based).

    base * 2**attempt with ±25% jitter, never above `cap`.
    """
    delay = min(base * (2**attempt), cap)
    jitter = delay * JITTER * (2 * rng() - 1)
    return max(0.0, min(delay + jitter, cap))
