from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_PORT = 80


@dataclass(frozen=True)
class ResourceRef:
    """Namespaced identity of a cluster object (a pod or a service).

    Structural equality makes it usable as a set member or dict key.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


PodRef = ResourceRef
ServiceRef = ResourceRef


class MatchMode(Enum):
    """How an endpoint control's URI is compared against the request path."""

    EXACT = "exact"
    PREFIX = "prefix"
    REGEX = "regex"

    @classmethod
    def from_legacy(cls, use_regex: bool | None) -> MatchMode:
        """Decode the legacy ``useRegex`` flag (``False``/``True``/``None``)."""
        if use_regex is None:
            return cls.PREFIX
        return cls.REGEX if use_regex else cls.EXACT

    def to_legacy(self) -> bool | None:
        if self is MatchMode.PREFIX:
            return None
        return self is MatchMode.REGEX


class TrafficDirection(Enum):
    IN = "in"
    OUT = "out"


@dataclass(frozen=True)
class EndpointControl:
    uri: str
    match_mode: MatchMode = MatchMode.PREFIX


@dataclass(frozen=True)
class RuleExtraInfo:
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if not 0 < self.port <= 65535:
            raise ValueError(f"port must be within 1..65535, got: {self.port}")


@dataclass(frozen=True)
class RouteRule:
    """Traffic from any of ``src_pods`` to ``des_service`` goes to ``des_pods``.

    ``endpoint_controls`` optionally narrow the rule to matching URIs; an
    empty tuple means the rule applies to every request.  ``name`` is unique
    within one ``(namespace, des_service)`` scope.
    """

    namespace: str
    des_service: str
    name: str
    src_pods: tuple[PodRef, ...] = ()
    des_pods: tuple[PodRef, ...] = ()
    endpoint_controls: tuple[EndpointControl, ...] = ()
    extra: RuleExtraInfo = field(default_factory=RuleExtraInfo)

    @property
    def service_ref(self) -> ServiceRef:
        return ServiceRef(self.namespace, self.des_service)

    def referenced_pods(self) -> tuple[PodRef, ...]:
        return self.src_pods + self.des_pods


@dataclass(frozen=True)
class RouteRuleId:
    """Lookup key for rules of one service; ``name=None`` selects every rule."""

    namespace: str
    des_service: str
    name: str | None = None

    @property
    def service_ref(self) -> ServiceRef:
        return ServiceRef(self.namespace, self.des_service)
