"""
challenges.py
-------------
Short-lived, single-use one-time codes keyed by username.

The store is an ordinary object handed to whoever needs it; swap it for a
shared cache if the server ever runs as more than one process.
"""

import hmac
import secrets
import time
from typing import Callable, Dict, Optional

OTP_DIGITS = 6
OTP_TTL_SECONDS = 120
OTP_MAX_ATTEMPTS = 5


class ChallengeStore:
    """Expiring key-value map: username -> [code, expires_at, failed attempts]."""

    def __init__(self, ttl_seconds: float = OTP_TTL_SECONDS,
                 clock: Callable[[], float] = time.time,
                 max_attempts: int = OTP_MAX_ATTEMPTS):
        self.ttl = ttl_seconds
        self.clock = clock
        self.max_attempts = max_attempts
        self._codes: Dict[str, list] = {}

    def issue(self, username: str) -> str:
        """Create (or replace) the pending code for username."""
        self.purge_expired()
        code = f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"
        self._codes[username] = [code, self.clock() + self.ttl, 0]
        return code

    def consume(self, username: str, code: str) -> bool:
        """
        True exactly once for a matching, unexpired code. A wrong guess counts
        against the code; after max_attempts failures it is discarded.
        """
        entry = self._codes.get(username)
        if entry is None:
            return False
        expected, expires_at, failures = entry
        if self.clock() > expires_at:
            self._codes.pop(username, None)
            return False
        if not isinstance(code, str) or not hmac.compare_digest(expected.encode(), code.encode()):
            entry[2] = failures + 1
            if entry[2] >= self.max_attempts:
                del self._codes[username]
            return False
        del self._codes[username]
        return True

    def pending(self, username: str) -> Optional[float]:
        """Expiry time of the pending code, if any."""
        entry = self._codes.get(username)
        if entry is None or self.clock() > entry[1]:
            return None
        return entry[1]

    def purge_expired(self) -> int:
        now = self.clock()
        stale = [u for u, (_, exp, _) in self._codes.items() if now > exp]
        for u in stale:
            del self._codes[u]
        return len(stale)

    def __len__(self) -> int:
        return len(self._codes)
