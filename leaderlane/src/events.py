from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from kubernetes.client import CoreV1Api, CoreV1Event, V1EventSource, V1ObjectMeta, V1ObjectReference

from leaderlane.src.models import DirectedService, utc_now

LOGGER = logging.getLogger(__name__)

COMPONENT = "leaderlane"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REASON_INVALID_SERVICE = "InvalidService"
REASON_NO_PODS_FOUND = "NoPodsFound"
REASON_NO_READY_PODS = "NoReadyPods"
REASON_PORT_RESOLUTION_FAILED = "PortResolutionFailed"
REASON_NAMED_PORT_RESOLUTION_FAILED = "NamedPortResolutionFailed"
REASON_LEADER_SERVICE_CREATED = "LeaderServiceCreated"
REASON_LEADER_ROUTING_AVAILABLE = "LeaderRoutingAvailable"
REASON_LEADER_CHANGED = "LeaderChanged"


class EventRecorder:
    """Publish Kubernetes Events against a source Service.

    Events are informational: a failed write is logged and dropped so it
    never fails the reconcile that emitted it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        component: str = COMPONENT,
    ) -> None:
        self.core_api = core_api
        self.logger = logger or LOGGER
        self.now_fn = now_fn
        self.component = component

    def normal(self, service: DirectedService, reason: str, message: str) -> bool:
        return self.record(service, EVENT_NORMAL, reason, message)

    def warning(self, service: DirectedService, reason: str, message: str) -> bool:
        return self.record(service, EVENT_WARNING, reason, message)

    def record(self, service: DirectedService, event_type: str, reason: str, message: str) -> bool:
        now = self.now_fn()
        body = CoreV1Event(
            api_version="v1",
            kind="Event",
            metadata=V1ObjectMeta(
                name=f"{service.name}.{time.time_ns():x}",
                namespace=service.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version="v1",
                kind="Service",
                name=service.name,
                namespace=service.namespace,
                uid=service.uid or None,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=V1EventSource(component=self.component),
        )
        try:
            self.core_api.create_namespaced_event(namespace=service.namespace, body=body)
        except Exception:
            self.logger.warning(
                "Failed to record %s event for %s/%s",
                reason,
                service.namespace,
                service.name,
                exc_info=True,
            )
            return False
        return True
