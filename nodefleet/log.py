"""Console logging helpers.

Messages are tagged with their component (``[pool]``, ``[sync]`` ...) and
flushed immediately so output from worker threads is not lost.
"""

from __future__ import annotations

import threading

_verbose = False
_print_lock = threading.Lock()


def set_verbose(enabled: bool) -> None:
    """Enable or disable debug output."""
    global _verbose
    _verbose = bool(enabled)


def is_verbose() -> bool:
    return _verbose


def log(msg: str) -> None:
    """Print with flush for reliable output in daemon threads."""
    with _print_lock:
        print(msg, flush=True)


def debug(msg: str) -> None:
    """Print only when verbose mode is on."""
    if _verbose:
        log(msg)
