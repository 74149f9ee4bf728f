from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from routectl.src.models import PodRef, RouteRule, TrafficDirection

LABEL_NAME = "routectl-name"
LABEL_NS = "routectl-ns"


@dataclass(frozen=True)
class Label:
    key: str
    value: str


def as_label(rule: RouteRule, direction: TrafficDirection) -> Label:
    """Return the per-rule label used by the simple tagging scheme.

    The key encodes direction and target service so one pod can carry labels
    for several rules at once; the value is the rule name.
    """
    return Label(
        key=f"routectl-{direction.value}--{rule.namespace}--{rule.des_service}",
        value=rule.name,
    )


def convention_labels(pod: PodRef) -> dict[str, str]:
    """Return the two identity labels a managed pod must carry."""
    return {LABEL_NAME: pod.name, LABEL_NS: pod.namespace}


def labels_identify(labels: Mapping[str, Any] | None, pod: PodRef) -> bool:
    """Return True if *labels* carry convention labels naming exactly *pod*."""
    if not labels:
        return False
    return labels.get(LABEL_NAME) == pod.name and labels.get(LABEL_NS) == pod.namespace


def pod_from_labels(labels: Mapping[str, Any] | None) -> PodRef | None:
    """Resolve the pod identity claimed by a two-key convention label map.

    Returns ``None`` unless the map holds exactly the two convention keys with
    non-empty string values.
    """
    if not isinstance(labels, Mapping) or set(labels) != {LABEL_NAME, LABEL_NS}:
        return None
    name = labels[LABEL_NAME]
    namespace = labels[LABEL_NS]
    if not isinstance(name, str) or not isinstance(namespace, str) or not name or not namespace:
        return None
    return PodRef(namespace=namespace, name=name)


def _escape_pointer(segment: str) -> str:
    return segment.replace("~", "~0").replace("/", "~1")


def label_patch(pod: PodRef, current_labels: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    """Build a JSON patch that sets the convention labels on *pod*.

    JSON patch ``replace`` fails on a missing member and ``add`` fails when the
    parent object is missing, so the operation is chosen per key from the
    labels the pod currently has.  Keys already holding the right value are
    left out, which keeps the patch idempotent.
    """
    desired = convention_labels(pod)
    if current_labels is None:
        return [{"op": "add", "path": "/metadata/labels", "value": desired}]

    operations: list[dict[str, Any]] = []
    for key, value in desired.items():
        if current_labels.get(key) == value:
            continue
        op = "replace" if key in current_labels else "add"
        operations.append(
            {"op": op, "path": f"/metadata/labels/{_escape_pointer(key)}", "value": value}
        )
    return operations
