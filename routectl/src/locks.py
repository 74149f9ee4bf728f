from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ServiceLockManager:
    """Non-blocking per-key exclusion for reconciliations of one service.

    A second caller for a key that is already held is rejected immediately
    with ``CONCURRENCY_CONFLICT``; nothing queues or waits.  Different keys
    never contend beyond the short critical section guarding the key set.
    """

    def __init__(self) -> None:
        self._held: set[Hashable] = set()
        self._guard = threading.Lock()

    def acquire(self, key: Hashable) -> None:
        with self._guard:
            if key in self._held:
                METRICS.lock_conflicts_total.inc()
                LOGGER.warning("Rejecting concurrent reconciliation for %s", key)
                raise RouteControllingError(
                    f"Resource {key} is under processing",
                    ErrorKind.CONCURRENCY_CONFLICT,
                )
            self._held.add(key)

    def release(self, key: Hashable) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._held

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold *key* for the duration of the ``with`` block."""
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)
