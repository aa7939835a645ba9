"""Traffic delta reconciliation across polls.

Node counters are cumulative, but they restart from zero whenever the remote
service restarts. ``TrafficReconciler`` keeps the previous reading per node
and turns each new reading into the traffic accrued since then:

- ``cur >= prev``: delta is ``cur - prev``
- ``cur < prev`` (reset): delta is ``cur``
- first reading after start: delta is zero, reading becomes the baseline

The previous-sample map is in memory only.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional

from ..data.models import TrafficDelta, TrafficSample, utcnow


def counter_delta(prev: int, cur: int) -> int:
    """Accrued amount between two readings of one counter."""
    return cur - prev if cur >= prev else cur


class TrafficReconciler:
    """Per-node previous-sample map with per-node locking."""

    def __init__(self):
        self._samples: Dict[str, TrafficSample] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _key_lock(self, node_id: str) -> threading.Lock:
        with self._lock:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[node_id] = lock
            return lock

    def observe(
        self,
        node_id: str,
        tx: int,
        rx: int,
        observed_at: Optional[datetime] = None,
    ) -> TrafficDelta:
        """Record a reading and return the traffic since the previous one."""
        sample = TrafficSample(tx=int(tx), rx=int(rx), observed_at=observed_at or utcnow())
        with self._key_lock(node_id):
            prev = self._samples.get(node_id)
            self._samples[node_id] = sample
        if prev is None:
            return TrafficDelta()
        return TrafficDelta(
            tx=counter_delta(prev.tx, sample.tx),
            rx=counter_delta(prev.rx, sample.rx),
        )

    def peek(self, node_id: str, tx: int, rx: int) -> TrafficDelta:
        """Traffic since the previous reading, leaving the baseline untouched."""
        with self._key_lock(node_id):
            prev = self._samples.get(node_id)
        if prev is None:
            return TrafficDelta()
        return TrafficDelta(tx=counter_delta(prev.tx, int(tx)), rx=counter_delta(prev.rx, int(rx)))

    def baseline(self, node_id: str) -> Optional[TrafficSample]:
        with self._key_lock(node_id):
            return self._samples.get(node_id)

    def forget(self, node_id: str) -> None:
        """Drop a node's baseline; its next reading seeds a new one."""
        with self._key_lock(node_id):
            self._samples.pop(node_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)
