#!/usr/bin/env python3
"""
Clock and randomness provider shared by all stateful components.

Window accounting uses a monotonic clock so that wall-clock adjustments
(NTP steps, manual changes) can never shrink or extend a window. Wall time
is only used for audit timestamps.

Security Considerations:
- Random bytes come from the OS CSPRNG (secrets module)
- Components receive the provider by injection, never a global
"""

import secrets
import time


class SystemClock:
    """
    Production clock/random provider.

    Tests substitute an object with the same three methods to control time.
    """

    def now(self) -> float:
        """Monotonic seconds, for window and lockout arithmetic."""
        return time.monotonic()

    def wall_time(self) -> float:
        """Unix timestamp, for audit records only."""
        return time.time()

    def random_bytes(self, length: int) -> bytes:
        """Cryptographically secure random bytes."""
        if length <= 0:
            raise ValueError("Random byte length must be positive")
        return secrets.token_bytes(length)

    def __repr__(self) -> str:
        return "SystemClock()"
