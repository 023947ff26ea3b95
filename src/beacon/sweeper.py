"""Liveness sweeper: prunes services that stopped sending heartbeats."""

import sys
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from .errors import NotFound, StoreError
from .registry import Registry


class LivenessSweeper:
    """Background loop that unregisters stale services.

    Every *interval* seconds, services whose ``last_seen`` is older than
    *stale_after* seconds are removed through ``Registry.unregister``, the
    same delete path used for explicit unregistration.
    """

    def __init__(self, registry: Registry, interval: float = 3600,
                 stale_after: float = 3600):
        if interval <= 0 or stale_after <= 0:
            raise ValueError("interval and stale_after must be positive")
        self.registry = registry
        self.interval = interval
        self.stale_after = stale_after
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: Optional[datetime] = None) -> List[str]:
        """Run one prune cycle and return the ids that were removed."""
        if now is None:
            now = self.registry.now()
        cutoff = now - timedelta(seconds=self.stale_after)

        pruned = []
        for service_id, name in self.registry.list_stale(cutoff):
            try:
                removed = self.registry.unregister(service_id, stale_before=cutoff)
            except NotFound:
                # Unregistered by someone else since the stale query
                continue
            except StoreError as exc:
                print(f"[sweeper] Failed to prune {name} ({service_id}): {exc}", file=sys.stderr)
                continue
            if not removed:
                print(
                    f"[sweeper] {name} ({service_id}) sent a heartbeat during the sweep, keeping it",
                    file=sys.stderr,
                )
                continue
            print(f"[sweeper] Pruned inactive service: {name} ({service_id})", file=sys.stderr)
            pruned.append(service_id)
        return pruned

    def run(self) -> None:
        """Sweep every *interval* seconds until ``stop()`` is called."""
        while not self._stop.wait(self.interval):
            try:
                self.sweep_once()
            except Exception as exc:
                print(f"[sweeper] Sweep cycle failed: {exc}", file=sys.stderr)

    def start(self) -> threading.Thread:
        """Run the loop in a daemon thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="beacon-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
