from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from leaderlane.src.cache import DecisionCache
from leaderlane.src.config import DirectorConfig
from leaderlane.src.kube import KubeClients
from leaderlane.src.leadership import build_leadership_source
from leaderlane.src.metadata import (
    LABEL_ENDPOINTSLICE_MANAGED_BY,
    LABEL_SOURCE_SERVICE,
    MANAGED_BY_VALUE,
)
from leaderlane.src.metrics import RECORDER, MetricsRecorder
from leaderlane.src.models import Candidate, DirectedService
from leaderlane.src.reconciler import ServiceDirector, is_generated_service
from leaderlane.src.retry import RetryPolicy
from leaderlane.src.scheduler import ReconcileScheduler, ResourceWatcher, ServiceKey

LOGGER = logging.getLogger(__name__)


def _key(obj: Any) -> ServiceKey | None:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        return None
    return namespace, name


class DirectorController:
    """Turn Service, Pod and EndpointSlice events into reconcile requests.

    Keeps two small indexes: the selector of every directed Service, and the
    last observed state of every pod.  Pod events only wake Services whose
    selector matched the pod before or after the change, and only when
    something routing depends on changed (readiness, deletion, IP, phase,
    labels, annotations or container ports).  Events on managed
    EndpointSlices wake their source Service so deletions and manual edits
    are reverted.
    """

    def __init__(
        self,
        clients: KubeClients,
        director: ServiceDirector,
        scheduler: ReconcileScheduler,
        namespace: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.director = director
        self.scheduler = scheduler
        self.namespace = namespace
        self.logger = logger or LOGGER
        scheduler.resync_keys = self.directed_keys

        self._lock = threading.Lock()
        self._selectors: dict[ServiceKey, dict[str, str]] = {}
        self._pods: dict[ServiceKey, Candidate] = {}
        self.fatal_error: str | None = None

        self.watchers = [
            ResourceWatcher(
                "services",
                self._list_fn(clients.core, "service"),
                self.handle_service_list,
                self.handle_service_event,
                list_kwargs=self._namespace_kwargs(),
            ),
            ResourceWatcher(
                "pods",
                self._list_fn(clients.core, "pod"),
                self.handle_pod_list,
                self.handle_pod_event,
                list_kwargs=self._namespace_kwargs(),
            ),
            ResourceWatcher(
                "endpointslices",
                self._list_fn(clients.discovery, "endpoint_slice"),
                self.handle_slice_list,
                self.handle_slice_event,
                list_kwargs={
                    **self._namespace_kwargs(),
                    "label_selector": f"{LABEL_ENDPOINTSLICE_MANAGED_BY}={MANAGED_BY_VALUE}",
                },
            ),
        ]

    def _list_fn(self, api: Any, kind: str) -> Any:
        if self.namespace:
            return getattr(api, f"list_namespaced_{kind}")
        return getattr(api, f"list_{kind}_for_all_namespaces")

    def _namespace_kwargs(self) -> dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}

    # -- indexes --------------------------------------------------------

    def directed_keys(self) -> list[ServiceKey]:
        with self._lock:
            return sorted(self._selectors)

    def _services_selecting(self, namespace: str, labels: dict[str, str]) -> list[ServiceKey]:
        with self._lock:
            return [
                key
                for key, selector in self._selectors.items()
                if key[0] == namespace
                and selector
                and all(labels.get(k) == v for k, v in selector.items())
            ]

    def _enqueue_all(self, keys: Iterable[ServiceKey]) -> None:
        for namespace, name in keys:
            self.scheduler.enqueue(namespace, name)

    # -- services -------------------------------------------------------

    def handle_service_list(self, items: list[Any]) -> None:
        """Replace the Service index with a full listing.

        Directed Services missing from the listing were deleted or opted out
        while the watch was down; they are queued once so cleanup runs.
        """
        listed: dict[ServiceKey, dict[str, str]] = {}
        for obj in items:
            key = _key(obj)
            if key is None or is_generated_service(obj):
                continue
            service = DirectedService.from_service(obj)
            if service.enabled:
                listed[key] = service.selector
        with self._lock:
            dropped = set(self._selectors) - set(listed)
            self._selectors = listed
        if dropped:
            self.logger.info("Relist dropped %d directed service(s)", len(dropped))
        self._enqueue_all(sorted(set(listed) | dropped))

    def handle_service_event(self, event_type: str, obj: Any) -> None:
        key = _key(obj)
        if key is None or is_generated_service(obj):
            return

        if event_type == "DELETED":
            with self._lock:
                known = self._selectors.pop(key, None) is not None
            if known:
                self.scheduler.enqueue(*key)
            return

        service = DirectedService.from_service(obj)
        with self._lock:
            known = key in self._selectors
            if service.enabled:
                self._selectors[key] = service.selector
            else:
                self._selectors.pop(key, None)
        if service.enabled or known:
            self.scheduler.enqueue(*key)

    # -- pods -----------------------------------------------------------

    def handle_pod_list(self, items: list[Any]) -> None:
        """Replace the pod index with a full listing, waking Services whose pods changed or vanished."""
        listed: dict[ServiceKey, Candidate] = {}
        for obj in items:
            key = _key(obj)
            if key is not None:
                listed[key] = Candidate.from_pod(obj)
        with self._lock:
            previous = self._pods
            self._pods = listed

        affected: set[ServiceKey] = set()
        for key, current in listed.items():
            before = previous.get(key)
            if before == current:
                continue
            affected.update(self._services_selecting(key[0], current.labels))
            if before is not None:
                affected.update(self._services_selecting(key[0], before.labels))
        for key in previous.keys() - listed.keys():
            affected.update(self._services_selecting(key[0], previous[key].labels))
        self._enqueue_all(sorted(affected))

    def handle_pod_event(self, event_type: str, obj: Any) -> None:
        key = _key(obj)
        if key is None:
            return
        namespace = key[0]

        if event_type == "DELETED":
            with self._lock:
                previous = self._pods.pop(key, None)
            labels = previous.labels if previous is not None else Candidate.from_pod(obj).labels
            self._enqueue_all(self._services_selecting(namespace, labels))
            return

        current = Candidate.from_pod(obj)
        with self._lock:
            previous = self._pods.get(key)
            self._pods[key] = current
        if previous == current:
            return

        affected = set(self._services_selecting(namespace, current.labels))
        if previous is not None:
            affected.update(self._services_selecting(namespace, previous.labels))
        self._enqueue_all(sorted(affected))

    # -- endpoint slices ------------------------------------------------

    @staticmethod
    def _slice_source(obj: Any) -> ServiceKey | None:
        key = _key(obj)
        labels = getattr(getattr(obj, "metadata", None), "labels", None) or {}
        source = labels.get(LABEL_SOURCE_SERVICE)
        if key is None or not source:
            return None
        return key[0], source

    def handle_slice_list(self, items: list[Any]) -> None:
        # Sources that are no longer directed get their leftovers cleaned up.
        sources = {source for obj in items if (source := self._slice_source(obj)) is not None}
        self._enqueue_all(sorted(sources))

    def handle_slice_event(self, event_type: str, obj: Any) -> None:
        source = self._slice_source(obj)
        if source is None:
            return
        if event_type == "DELETED":
            self.director.invalidate(*source)
            self.scheduler.enqueue(*source)
        elif event_type == "ADDED":
            with self._lock:
                known = source in self._selectors
            if not known:
                self.scheduler.enqueue(*source)
        elif self.director.observed_slice_drifted(source[0], source[1], obj):
            self.scheduler.enqueue(*source)

    # -- lifecycle ------------------------------------------------------

    def is_ready(self) -> bool:
        if self.fatal_error is not None:
            return False
        return all(w.ready.is_set() for w in self.watchers) and self.scheduler.is_ready()

    def request_stop(self) -> None:
        for watcher in self.watchers:
            watcher.request_stop()
        self.scheduler.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the watchers and run the scheduler until shutdown or a fatal watch error."""
        stop = shutdown_event or threading.Event()
        threads = [
            threading.Thread(
                target=self._run_watcher,
                args=(watcher, stop),
                name=f"watch-{watcher.resource}",
                daemon=True,
            )
            for watcher in self.watchers
        ]
        for thread in threads:
            thread.start()

        synced = threading.Thread(target=self._mark_synced, args=(stop,), daemon=True)
        synced.start()
        self.scheduler.run_forever(shutdown_event=stop)

        self.request_stop()
        for thread in threads:
            thread.join(timeout=5)

    def _run_watcher(self, watcher: ResourceWatcher, stop: threading.Event) -> None:
        try:
            watcher.run_forever(shutdown_event=stop)
        except Exception:
            self.logger.exception("%s watcher crashed", watcher.resource)
            watcher.fatal = True
        if watcher.fatal and not stop.is_set():
            self.fatal_error = f"{watcher.resource} watch stopped"
            self.logger.error("Stopping controller: %s", self.fatal_error)
            self.scheduler.request_stop()

    def _mark_synced(self, stop: threading.Event) -> None:
        while not stop.is_set():
            if all(w.ready.is_set() for w in self.watchers):
                self.scheduler.mark_synced()
                self.logger.info("Initial sync complete; %d directed service(s)", len(self.directed_keys()))
                return
            if any(w.fatal for w in self.watchers):
                return
            stop.wait(timeout=0.2)


def build_controller(
    config: DirectorConfig, clients: KubeClients, metrics: MetricsRecorder = RECORDER
) -> DirectorController:
    """Wire the decision cache, director, scheduler and watchers from *config*."""
    source = build_leadership_source(config.leadership_source, clients.coordination)
    cache = DecisionCache(max_entries_per_namespace=config.max_cache_entries_per_namespace)
    director = ServiceDirector(
        core_api=clients.core,
        discovery_api=clients.discovery,
        source=source,
        cache=cache,
        metrics=metrics,
        retry_policy=RetryPolicy(
            max_attempts=config.retry_max_attempts,
            initial_backoff_seconds=config.retry_initial_backoff_seconds,
            max_backoff_seconds=config.retry_max_backoff_seconds,
        ),
        cache_update_timeout_seconds=config.cache_update_timeout_seconds,
        metrics_collection_timeout_seconds=config.metrics_collection_timeout_seconds,
    )
    scheduler = ReconcileScheduler(
        director,
        max_concurrent_reconciles=config.max_concurrent_reconciles,
        cache_update_timeout_seconds=config.cache_update_timeout_seconds,
        resync_period_seconds=config.resync_period_seconds,
        metrics=metrics,
    )
    LOGGER.info(
        "Directing services in %s using %s leadership",
        config.watch_namespace or "all namespaces",
        source.name,
    )
    return DirectorController(clients, director, scheduler, namespace=config.watch_namespace)
