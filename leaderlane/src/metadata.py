from __future__ import annotations

ANNOTATION_ENABLED = "leaderlane.io/enabled"
ANNOTATION_LEADER_SERVICE_NAME = "leaderlane.io/leader-service-name"
ANNOTATION_STICKY = "leaderlane.io/sticky"
ANNOTATION_MIN_READY_DURATION = "leaderlane.io/min-ready-duration"
ANNOTATION_LEASE_NAME = "leaderlane.io/lease-name"

# Written by the controller on the leader Service and EndpointSlice.
ANNOTATION_PHASE = "leaderlane.io/phase"
ANNOTATION_LEADER_POD_NAME = "leaderlane.io/leader-pod-name"
ANNOTATION_LEADER_POD_UID = "leaderlane.io/leader-pod-uid"
ANNOTATION_LEADER_SINCE = "leaderlane.io/leader-since"
ANNOTATION_LAST_SWITCH_TIME = "leaderlane.io/last-switch-time"

# Read from pods by the label/annotation leadership source.
LEADER_ROLE_KEY = "leaderlane.io/role"
LEADER_ROLE_VALUE = "leader"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_SOURCE_SERVICE = "leaderlane.io/source-service"
LABEL_SERVICE_NAME = "kubernetes.io/service-name"
LABEL_ENDPOINTSLICE_MANAGED_BY = "endpointslice.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "leaderlane"

LEADER_SERVICE_SUFFIX = "-leader"

_GITOPS_TRACKING_LABELS = frozenset(
    {
        "app.kubernetes.io/instance",
        "app.kubernetes.io/managed-by",
        "app.kubernetes.io/part-of",
        "app.kubernetes.io/version",
        "argocd.argoproj.io/instance",
        "fluxcd.io/part-of",
        "kustomize.toolkit.fluxcd.io/name",
        "kustomize.toolkit.fluxcd.io/namespace",
        "kustomize.toolkit.fluxcd.io/revision",
    }
)

_GITOPS_TRACKING_ANNOTATIONS = frozenset(
    {
        "argocd.argoproj.io/sync-wave",
        "argocd.argoproj.io/sync-options",
        "fluxcd.io/sync-checksum",
        "kustomize.toolkit.fluxcd.io/checksum",
        "kubectl.kubernetes.io/last-applied-configuration",
    }
)


def filter_gitops_labels(labels: dict[str, str] | None) -> dict[str, str]:
    """Drop labels that would make a GitOps tool claim or prune generated objects."""
    return {k: v for k, v in (labels or {}).items() if k not in _GITOPS_TRACKING_LABELS}


def filter_gitops_annotations(annotations: dict[str, str] | None) -> dict[str, str]:
    return {
        k: v
        for k, v in (annotations or {}).items()
        if k not in _GITOPS_TRACKING_ANNOTATIONS and not k.startswith("leaderlane.io/")
    }


def managed_labels(source_service: str, labels: dict[str, str] | None = None) -> dict[str, str]:
    """Return the labels carried by every object generated for *source_service*."""
    result = filter_gitops_labels(labels)
    result[LABEL_MANAGED_BY] = MANAGED_BY_VALUE
    result[LABEL_SOURCE_SERVICE] = source_service
    return result
