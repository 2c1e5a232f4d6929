import re
import threading
import time
from typing import Callable, Protocol

_UNSAFE_CHARS = re.compile(r"[^\w.\-()]", re.ASCII)

# Leaves room for the millisecond stamp and dash within a 255-byte file name.
MAX_NAME_LENGTH = 200
MAX_EXTENSION_LENGTH = 16


def sanitize_filename(name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Replace every character outside ``[A-Za-z0-9_.-()]`` with ``_``.

    Names longer than ``max_length`` are cut down, keeping a short extension.
    """
    safe = _UNSAFE_CHARS.sub("_", name) or "file"
    if len(safe) <= max_length:
        return safe
    stem, dot, extension = safe.rpartition(".")
    if dot and stem and len(extension) <= MAX_EXTENSION_LENGTH:
        return f"{stem[: max_length - len(extension) - 1]}.{extension}"
    return safe[:max_length]


def epoch_millis() -> int:
    return time.time_ns() // 1_000_000


class Namer(Protocol):
    def __call__(self, original_name: str) -> str: ...


class TimestampNamer:
    """Builds ``<epoch-ms>-<sanitized name>`` storage names.

    The millisecond stamp handed out by one namer never repeats: when two calls
    land in the same millisecond the second one gets the next value.
    """

    def __init__(self, clock: Callable[[], int] = epoch_millis):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def _next_stamp(self) -> int:
        with self._lock:
            stamp = max(self._clock(), self._last + 1)
            self._last = stamp
            return stamp

    def __call__(self, original_name: str) -> str:
        return f"{self._next_stamp()}-{sanitize_filename(original_name)}"
