from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from leaderlane.src.metrics import RECORDER, MetricsRecorder
from leaderlane.src.reconciler import ReconcileResult, ServiceDirector

LOGGER = logging.getLogger(__name__)

ServiceKey = tuple[str, str]


class WorkQueue:
    """Deduplicating, delay-capable queue of Service keys.

    A key is held at most once in the ready queue.  A key added while it is
    being processed is marked dirty and re-queued when ``done`` is called, so
    the same Service is never reconciled by two workers at once and no change
    is lost.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._ready: deque[ServiceKey] = deque()
        self._queued: set[ServiceKey] = set()
        self._processing: set[ServiceKey] = set()
        self._dirty: set[ServiceKey] = set()
        self._delayed: list[tuple[float, int, ServiceKey]] = []
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._shutdown = False

    def _push_ready(self, key: ServiceKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
        elif key not in self._queued:
            self._queued.add(key)
            self._ready.append(key)

    def add(self, key: ServiceKey, delay: float = 0.0) -> None:
        with self._cond:
            if self._shutdown:
                return
            if delay > 0:
                heapq.heappush(self._delayed, (self.clock() + delay, next(self._sequence), key))
            else:
                self._push_ready(key)
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed keys to the ready queue; return seconds until the next one."""
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._push_ready(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> ServiceKey | None:
        """Return the next ready key, or None on timeout or shutdown."""
        give_up_at = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                wait = next_due
                if give_up_at is not None:
                    remaining = give_up_at - self.clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: ServiceKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._push_ready(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)


class ReconcileScheduler:
    """Run reconciles for queued Service keys on a bounded worker pool.

    At most ``max_concurrent_reconciles`` reconciles run at once; further
    keys wait in the queue.  Each running reconcile pins its decision-cache
    entry against eviction.  Failed reconciles are re-queued with a per-key
    exponential backoff (1 s doubling to ``max_requeue_seconds``, jittered),
    reset on the next success.  Every ``resync_period_seconds`` all keys
    returned by ``resync_keys`` are queued again.
    """

    def __init__(
        self,
        director: ServiceDirector,
        max_concurrent_reconciles: int = 10,
        cache_update_timeout_seconds: float = 10.0,
        resync_period_seconds: float = 300.0,
        resync_keys: Callable[[], Iterable[ServiceKey]] | None = None,
        initial_requeue_seconds: float = 1.0,
        max_requeue_seconds: float = 300.0,
        metrics: MetricsRecorder = RECORDER,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be >= 1")
        self.director = director
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.cache_update_timeout_seconds = cache_update_timeout_seconds
        self.resync_period_seconds = resync_period_seconds
        self.resync_keys = resync_keys
        self.initial_requeue_seconds = initial_requeue_seconds
        self.max_requeue_seconds = max_requeue_seconds
        self.metrics = metrics
        self.logger = logger or LOGGER
        self.clock = clock

        self.queue = WorkQueue(clock=clock)
        self._slots = threading.BoundedSemaphore(max_concurrent_reconciles)
        self._state_lock = threading.Lock()
        self._in_flight: dict[ServiceKey, float] = {}
        self._requeue_attempts: dict[ServiceKey, int] = {}
        self._completed = 0
        self._ever_enqueued = False
        self._synced = threading.Event()
        self._external_stop = threading.Event()

    # -- queueing -------------------------------------------------------

    def enqueue(self, namespace: str, name: str, delay: float = 0.0) -> None:
        with self._state_lock:
            self._ever_enqueued = True
        self.queue.add((namespace, name), delay=delay)
        self.metrics.record_queue_depth(len(self.queue))

    def mark_synced(self) -> None:
        """Called once the initial listings have been queued."""
        self._synced.set()

    def _requeue_delay(self, key: ServiceKey) -> float:
        with self._state_lock:
            attempt = self._requeue_attempts.get(key, 0) + 1
            self._requeue_attempts[key] = attempt
        base = min(self.max_requeue_seconds, self.initial_requeue_seconds * (2 ** (attempt - 1)))
        return base * (0.5 + random.random())  # noqa: S311

    # -- health ---------------------------------------------------------

    @property
    def completed_reconciles(self) -> int:
        with self._state_lock:
            return self._completed

    def in_flight(self) -> dict[ServiceKey, float]:
        with self._state_lock:
            return dict(self._in_flight)

    def is_ready(self) -> bool:
        """Ready once a reconcile cycle has completed and work is not stuck.

        With no directed Services there is nothing to reconcile, so the
        scheduler is ready as soon as the initial sync is done.  It is not
        ready while every in-flight reconcile has run past the cache-update
        timeout.  Reconcile errors do not affect readiness.
        """
        if not self._synced.is_set():
            return False
        now = self.clock()
        with self._state_lock:
            if self._ever_enqueued and self._completed == 0:
                return False
            started = list(self._in_flight.values())
        if started and all(now - s > self.cache_update_timeout_seconds for s in started):
            return False
        return True

    # -- workers --------------------------------------------------------

    def process(self, key: ServiceKey) -> ReconcileResult | None:
        """Reconcile *key* once and schedule any requeue.  Runs on a worker thread."""
        namespace, name = key
        result = None
        with self._state_lock:
            self._in_flight[key] = self.clock()
            self.metrics.record_in_flight(len(self._in_flight))
        try:
            with self.director.cache.pinned(namespace, name):
                result = self.director.reconcile(namespace, name)
        except Exception:
            self.logger.exception("Unhandled error reconciling %s/%s", namespace, name)
        finally:
            with self._state_lock:
                self._in_flight.pop(key, None)
                self._completed += 1
                self.metrics.record_in_flight(len(self._in_flight))
            self.queue.done(key)

        if result is None or result.requeue:
            delay = self._requeue_delay(key)
            self.logger.info("Requeueing %s/%s in %.1fs", namespace, name, delay)
            self.queue.add(key, delay=delay)
        else:
            with self._state_lock:
                self._requeue_attempts.pop(key, None)
        self.metrics.record_queue_depth(len(self.queue))
        return result

    def _run_slot(self, key: ServiceKey) -> None:
        try:
            self.process(key)
        finally:
            self._slots.release()

    def _resync(self) -> None:
        if self.resync_keys is None:
            return
        keys = list(self.resync_keys())
        for namespace, name in keys:
            self.enqueue(namespace, name)
        self.logger.debug("Periodic resync queued %d service(s)", len(keys))

    def request_stop(self) -> None:
        self._external_stop.set()
        self.queue.shutdown()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Dispatch queued keys to workers until shutdown, then wait for running reconciles."""
        stop = shutdown_event or threading.Event()
        next_resync = self.clock() + self.resync_period_seconds
        self.logger.info(
            "Reconcile scheduler started (max_concurrent_reconciles=%d)",
            self.max_concurrent_reconciles,
        )
        with ThreadPoolExecutor(
            max_workers=self.max_concurrent_reconciles, thread_name_prefix="reconcile"
        ) as executor:
            while not stop.is_set() and not self._external_stop.is_set():
                if self.resync_period_seconds > 0 and self.clock() >= next_resync:
                    self._resync()
                    next_resync = self.clock() + self.resync_period_seconds
                if not self._slots.acquire(timeout=0.5):
                    continue
                key = self.queue.get(timeout=0.5)
                if key is None:
                    self._slots.release()
                    continue
                self.metrics.record_queue_depth(len(self.queue))
                executor.submit(self._run_slot, key)
            self.queue.shutdown()
        self.logger.info("Reconcile scheduler stopped")


class ResourceWatcher:
    """List-then-watch loop for one resource kind, feeding events to handlers.

    1. Retries the initial list with jittered exponential backoff.
    2. Hands the listing to ``handle_list`` and sets ``ready``.
    3. Watches from the list's ``resourceVersion``, passing each event to
       ``handle_event``.
    4. On ``410 Gone`` re-lists and resumes.
    5. On other errors backs off (capped at 30 s) and reconnects.

    ``401`` / ``403`` are configuration errors (RBAC/auth): the loop stops,
    ``fatal`` is set and ``ready`` is cleared.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        handle_list: Callable[[list[Any]], None],
        handle_event: Callable[[str, Any], None],
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 300,
        metrics: MetricsRecorder = RECORDER,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.list_fn = list_fn
        self.handle_list = handle_list
        self.handle_event = handle_event
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.metrics = metrics
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self.fatal = False
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _denied(self, exc: ApiException, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            self.resource,
            exc.status,
        )
        self.fatal = True
        self.ready.clear()

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        self.handle_list(list(getattr(listing, "items", None) or []))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.resource, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._denied(exc, "initial list")
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                self.metrics.record_watch_error(self.resource)
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                self.metrics.record_watch_error(self.resource)

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    self.metrics.record_watch_reconnect(self.resource)
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.handle_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.resource)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._denied(relist_exc, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        self.metrics.record_watch_error(self.resource)
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.metrics.record_watch_error(self.resource)
                    self._denied(exc, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", self.resource)
                self.metrics.record_watch_error(self.resource)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.resource)
                self.metrics.record_watch_error(self.resource)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
