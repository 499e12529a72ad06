"""
Utility functions for the realtime store.
"""

import logging
import secrets
import threading
import time

logger = logging.getLogger(__name__)

# ASCII-ordered alphabet so generated keys sort lexically by creation time
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class PushIdGenerator:
    """
    Generate 20-character, chronologically sortable record keys.

    The first 8 characters encode the creation millisecond. The remaining
    12 are random; when two keys share a millisecond the random part of the
    previous key is incremented by one so ordering still follows creation.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_ts = -1
        self._last_rand = [0] * 12

    def generate(self, timestamp_ms: int) -> str:
        with self._lock:
            if timestamp_ms == self._last_ts:
                self._increment()
            else:
                self._last_rand = [secrets.randbelow(64) for _ in range(12)]
            self._last_ts = timestamp_ms

            time_chars = []
            ts = timestamp_ms
            for _ in range(8):
                time_chars.append(PUSH_CHARS[ts % 64])
                ts //= 64
            if ts != 0:
                raise ValueError(f"Timestamp out of range for push key: {timestamp_ms}")

            key = "".join(reversed(time_chars)) + "".join(PUSH_CHARS[i] for i in self._last_rand)
            logger.debug(f"Generated push key {key} for ts={timestamp_ms}")
            return key

    def _increment(self) -> None:
        i = 11
        while i >= 0 and self._last_rand[i] == 63:
            self._last_rand[i] = 0
            i -= 1
        if i >= 0:
            self._last_rand[i] += 1
