"""
Timestamp helpers.

Timestamps are integer milliseconds since the epoch. Message ordering inside a
conversation falls back on creation time, so 'get_current_timestamp' never
returns the same value twice within a process: two messages created in the same
millisecond still get a strict order.
"""

import threading
import time

_lock = threading.Lock()
_last_timestamp = 0


def get_current_timestamp() -> int:
    """Return the current time in milliseconds, strictly increasing per process."""
    global _last_timestamp
    with _lock:
        now = int(time.time() * 1000)
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp
