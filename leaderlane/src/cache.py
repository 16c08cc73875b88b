from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from leaderlane.src.models import DecisionCacheEntry, LeaderRecord

LOGGER = logging.getLogger(__name__)


class _NamespaceDecisions:
    """Decisions for one namespace, ordered from least to most recently updated."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: OrderedDict[str, DecisionCacheEntry] = OrderedDict()
        self.pinned: dict[str, int] = {}


class DecisionCache:
    """Per-namespace bounded store of the last routing decision per Service.

    Each namespace owns a separate map and lock, so a burst of reconciles in
    one namespace never waits on another.  The outer lock only guards the
    creation of namespace maps.

    Entries are ordered by last update.  ``put`` on a full namespace evicts
    the least recently updated entry, skipping the key being written and any
    key pinned by an in-flight reconcile.  When every other entry is pinned
    the new key is not stored; the cache is advisory, so the next reconcile
    simply writes again.

    ``max_entries_per_namespace == 0`` disables the bound.
    """

    def __init__(
        self,
        max_entries_per_namespace: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries_per_namespace < 0:
            raise ValueError("max_entries_per_namespace must be >= 0")
        self.max_entries_per_namespace = max_entries_per_namespace
        self.clock = clock
        self._namespaces: dict[str, _NamespaceDecisions] = {}
        self._namespaces_lock = threading.Lock()

    def _namespace(self, namespace: str) -> _NamespaceDecisions:
        decisions = self._namespaces.get(namespace)
        if decisions is not None:
            return decisions
        with self._namespaces_lock:
            return self._namespaces.setdefault(namespace, _NamespaceDecisions())

    def get(self, namespace: str, service: str) -> tuple[DecisionCacheEntry | None, bool]:
        decisions = self._namespace(namespace)
        with decisions.lock:
            entry = decisions.entries.get(service)
        return entry, entry is not None

    def put(self, namespace: str, service: str, entry: DecisionCacheEntry) -> bool:
        """Store *entry*; return False when capacity forced the write to be dropped."""
        decisions = self._namespace(namespace)
        with decisions.lock:
            if service in decisions.entries:
                decisions.entries[service] = entry
                decisions.entries.move_to_end(service)
                return True

            limit = self.max_entries_per_namespace
            while limit and len(decisions.entries) >= limit:
                victim = next(
                    (
                        key
                        for key in decisions.entries
                        if key != service and not decisions.pinned.get(key)
                    ),
                    None,
                )
                if victim is None:
                    LOGGER.debug(
                        "Decision cache for namespace %s is full of in-flight services; "
                        "not caching %s",
                        namespace,
                        service,
                    )
                    return False
                del decisions.entries[victim]
                LOGGER.debug("Evicted decision for %s/%s", namespace, victim)

            decisions.entries[service] = entry
            return True

    def evict(self, namespace: str, service: str) -> None:
        decisions = self._namespace(namespace)
        with decisions.lock:
            decisions.entries.pop(service, None)

    def new_entry(self, leader: LeaderRecord | None, fingerprint: str) -> DecisionCacheEntry:
        return DecisionCacheEntry(leader=leader, fingerprint=fingerprint, updated_at=self.clock())

    @contextmanager
    def pinned(self, namespace: str, service: str) -> Iterator[None]:
        """Protect the entry for *service* from eviction while the block runs."""
        decisions = self._namespace(namespace)
        with decisions.lock:
            decisions.pinned[service] = decisions.pinned.get(service, 0) + 1
        try:
            yield
        finally:
            with decisions.lock:
                remaining = decisions.pinned.get(service, 0) - 1
                if remaining > 0:
                    decisions.pinned[service] = remaining
                else:
                    decisions.pinned.pop(service, None)

    def size(self, namespace: str) -> int:
        decisions = self._namespace(namespace)
        with decisions.lock:
            return len(decisions.entries)
