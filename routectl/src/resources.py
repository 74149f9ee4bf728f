"""Wire format of the Istio resource pair managed per service.

Bodies are plain dicts as accepted and returned by ``CustomObjectsApi``.
Only the fields the controller writes are produced; unknown fields on read
are ignored.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from routectl.src.labels import convention_labels
from routectl.src.models import EndpointControl, MatchMode, PodRef, RouteRule, ServiceRef

ISTIO_GROUP = "networking.istio.io"
ISTIO_VERSION = "v1alpha3"
RESOURCE_PREFIX = "routectl-"


@dataclass(frozen=True)
class ResourceKind:
    kind: str
    plural: str
    group: str = ISTIO_GROUP
    version: str = ISTIO_VERSION

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


DESTINATION_RULE = ResourceKind(kind="DestinationRule", plural="destinationrules")
VIRTUAL_SERVICE = ResourceKind(kind="VirtualService", plural="virtualservices")


def resource_name(service_name: str) -> str:
    return f"{RESOURCE_PREFIX}{service_name}"


def encode_uri_match(control: EndpointControl) -> dict[str, str]:
    """Encode an endpoint control as an Istio ``StringMatch`` (one-key mapping)."""
    return {control.match_mode.value: control.uri}


def decode_uri_match(raw: Any) -> EndpointControl | None:
    """Decode an Istio ``StringMatch``; ``None`` when it is not a one-key mapping
    of a known match type to a string."""
    if not isinstance(raw, Mapping) or len(raw) != 1:
        return None
    key, value = next(iter(raw.items()))
    try:
        mode = MatchMode(key)
    except ValueError:
        return None
    if not isinstance(value, str):
        return None
    return EndpointControl(uri=value, match_mode=mode)


def _body(kind: ResourceKind, service: ServiceRef, spec: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": kind.api_version,
        "kind": kind.kind,
        "metadata": {"name": resource_name(service.name), "namespace": service.namespace},
        "spec": spec,
    }


def build_destination_rule(service: ServiceRef, rules: list[RouteRule]) -> dict[str, Any]:
    """One subset per distinct destination pod across *rules*, first-seen order."""
    seen: set[PodRef] = set()
    subsets: list[dict[str, Any]] = []
    for rule in rules:
        for pod in rule.des_pods:
            if pod in seen:
                continue
            seen.add(pod)
            subsets.append({"name": pod.name, "labels": convention_labels(pod)})
    return _body(DESTINATION_RULE, service, {"host": service.name, "subsets": subsets})


def build_http_route(service: ServiceRef, rule: RouteRule) -> dict[str, Any]:
    # ``None`` stands for "no URI condition" so a rule without endpoint
    # controls still yields one match per source pod.
    controls: list[EndpointControl | None] = list(rule.endpoint_controls) or [None]

    matches: list[dict[str, Any]] = []
    for control in controls:
        for src in rule.src_pods:
            match: dict[str, Any] = {"name": rule.name, "sourceLabels": convention_labels(src)}
            if control is not None:
                match["uri"] = encode_uri_match(control)
            matches.append(match)

    destinations = [
        {
            "destination": {
                "host": service.name,
                "subset": des.name,
                "port": {"number": rule.extra.port},
            }
        }
        for des in rule.des_pods
    ]
    return {"name": rule.name, "match": matches, "route": destinations}


def build_virtual_service(service: ServiceRef, rules: list[RouteRule]) -> dict[str, Any]:
    http = [build_http_route(service, rule) for rule in rules]
    return _body(VIRTUAL_SERVICE, service, {"hosts": [service.name], "http": http})
