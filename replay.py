"""
replay.py
---------
Freshness and duplicate checks for incoming messages.

The freshness test is a pure clock comparison and runs first. The duplicate
pre-check asks the message store whether the content hash or the nonce is
already known; it only saves work. The store's UNIQUE constraints are what
actually stop a replay that races past the pre-check.
"""

import time
from typing import Callable

from errors import FreshnessError, ReplayError, ValidationError
from keys import b64decode
from payload import NONCE_BYTES

FRESHNESS_WINDOW_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def decode_nonce(nonce_b64) -> bytes:
    """Decode a base64 nonce; anything but exactly 16 bytes is invalid."""
    try:
        raw = b64decode(nonce_b64)
    except ValueError as e:
        raise ValidationError(f"nonce: {e}") from e
    if len(raw) != NONCE_BYTES:
        raise ValidationError(f"nonce is {len(raw)} bytes, expected {NONCE_BYTES}")
    return raw


class ReplayGuard:
    def __init__(self, store, window_ms: int = FRESHNESS_WINDOW_MS,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.window_ms = window_ms
        self.clock = clock

    def is_fresh(self, ts_ms: int) -> bool:
        return abs(self.clock() - ts_ms) <= self.window_ms

    def check_fresh(self, ts_ms: int) -> None:
        if not self.is_fresh(ts_ms):
            raise FreshnessError(f"clientTimestamp {ts_ms} outside +/-{self.window_ms}ms")

    async def check_unseen(self, body_hash: bytes, nonce: bytes) -> None:
        if await self.store.find_existing_by_hash_or_nonce(body_hash, nonce):
            raise ReplayError("hash or nonce already stored")
