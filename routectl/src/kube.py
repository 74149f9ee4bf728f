from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from routectl.src.labels import label_patch
from routectl.src.models import PodRef

LOGGER = logging.getLogger(__name__)

# Failures raised by the client transport: API error responses, and
# connection/timeout errors surfaced by urllib3 once its own retries give up.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (ApiException, HTTPError)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def patch_pod_labels(
    core_api: CoreV1Api,
    pod: PodRef,
    current_labels: Mapping[str, Any] | None,
) -> bool:
    """Set the convention labels on *pod* with a JSON patch.

    Returns ``False`` without calling the API when the labels are already
    correct.  A list body makes the client send
    ``application/json-patch+json``.
    """
    body = label_patch(pod, current_labels)
    if not body:
        return False
    core_api.patch_namespaced_pod(name=pod.name, namespace=pod.namespace, body=body)
    return True
