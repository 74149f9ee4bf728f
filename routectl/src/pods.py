from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import CoreV1Api

from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.kube import TRANSPORT_ERRORS, patch_pod_labels
from routectl.src.labels import labels_identify
from routectl.src.metrics import METRICS
from routectl.src.models import PodRef


class PodAvailabilityProber:
    """Determines which pods may be referenced by route rules.

    A pod is *managed* when its ``routectl-name``/``routectl-ns`` labels name
    the pod itself.  The subset and source-label selectors written into the
    Istio resources rely on exactly these labels, so a pod without them would
    silently receive (or send) no routed traffic.

    ``namespace`` restricts the listing; ``None`` lists every namespace.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)

    def _list_pods(self) -> list[Any]:
        if self.namespace:
            pods = self.core_api.list_namespaced_pod(namespace=self.namespace)
        else:
            pods = self.core_api.list_pod_for_all_namespaces()
        return list(getattr(pods, "items", None) or [])

    def _fix_labels(self, pod_ref: PodRef, labels: dict[str, Any] | None) -> bool:
        try:
            patch_pod_labels(self.core_api, pod_ref, labels)
        except TRANSPORT_ERRORS:
            METRICS.pod_label_fixes_total.labels(result="failed").inc()
            self.logger.warning("Failed to fix convention labels for pod %s", pod_ref, exc_info=True)
            return False
        METRICS.pod_label_fixes_total.labels(result="fixed").inc()
        self.logger.info("Fixed convention labels for pod %s", pod_ref)
        return True

    def available_pods(self, auto_fix: bool = False) -> set[PodRef]:
        """Return the identities of all managed pods.

        With ``auto_fix`` pods with missing or mismatched labels are patched
        and included when the patch succeeds.  Only a failing list call is an
        error (``BAD_POD_LABELS``); a single pod's label state never is.
        """
        try:
            items = self._list_pods()
        except TRANSPORT_ERRORS as exc:
            self.logger.exception("Failed to list pods while probing managed pods")
            raise RouteControllingError(
                "Failed to get available pods", ErrorKind.BAD_POD_LABELS, exc
            ) from exc

        available: set[PodRef] = set()
        for item in items:
            metadata = getattr(item, "metadata", None)
            name = getattr(metadata, "name", None)
            namespace = getattr(metadata, "namespace", None)
            if not name or not namespace:
                continue

            pod_ref = PodRef(namespace=namespace, name=name)
            labels = getattr(metadata, "labels", None)
            if labels_identify(labels, pod_ref):
                available.add(pod_ref)
                continue

            if not auto_fix:
                continue

            self.logger.warning(
                "Pod %s has missing or mismatched convention labels (%s); fixing",
                pod_ref,
                labels,
            )
            if self._fix_labels(pod_ref, labels):
                available.add(pod_ref)

        return available
