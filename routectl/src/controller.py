from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.kube import TRANSPORT_ERRORS, is_not_found
from routectl.src.labels import pod_from_labels
from routectl.src.locks import ServiceLockManager
from routectl.src.metrics import METRICS
from routectl.src.models import (
    DEFAULT_PORT,
    EndpointControl,
    PodRef,
    RouteRule,
    RuleExtraInfo,
    ServiceRef,
)
from routectl.src.pods import PodAvailabilityProber
from routectl.src.resources import (
    DESTINATION_RULE,
    VIRTUAL_SERVICE,
    ResourceKind,
    build_destination_rule,
    build_virtual_service,
    decode_uri_match,
    resource_name,
)


@dataclass(frozen=True)
class _FetchResult:
    """Outcome of reading one custom object; ``body is None`` means absent."""

    body: dict[str, Any] | None
    reason: str = ""

    @property
    def absent(self) -> bool:
        return self.body is None


def _append_unique(items: list[Any], item: Any) -> None:
    if item not in items:
        items.append(item)


def _valid_port(raw: Any) -> int | None:
    if isinstance(raw, int) and not isinstance(raw, bool) and 0 < raw <= 65535:
        return raw
    return None


class RouteController:
    """Maps the route rules of one service onto its Istio resource pair and back.

    For a service ``svc`` in namespace ``ns`` the pair is the
    ``DestinationRule`` and ``VirtualService`` named ``routectl-svc`` in
    ``ns``.  The ``DestinationRule`` holds one subset per destination pod and
    the ``VirtualService`` holds one HTTP route per rule.

    Reads are best effort: malformed subsets, routes, destinations and matches
    are logged and skipped, and a missing or inconsistent pair reads as "no
    policy" (``None``).  Writes are all or nothing: every rule is validated
    and every referenced pod must be managed before the first API mutation.

    Every public operation holds the per-service lock; a concurrent call for
    the same service fails fast with ``CONCURRENCY_CONFLICT``.  The
    ``DestinationRule`` is always read or written before the
    ``VirtualService``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        pod_namespace: str | None = None,
        auto_fix_labels: bool = True,
        prober: PodAvailabilityProber | None = None,
        locks: ServiceLockManager | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.auto_fix_labels = auto_fix_labels
        self.logger = logger or logging.getLogger(__name__)
        self.prober = prober or PodAvailabilityProber(
            core_api=core_api, namespace=pod_namespace, logger=self.logger
        )
        self.locks = locks or ServiceLockManager()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_all(self, service_ref: ServiceRef) -> list[RouteRule] | None:
        """Reconstruct every rule of *service_ref* from the cluster.

        Returns ``None`` when no usable resource pair exists and a (possibly
        empty) list otherwise.
        """
        with self._observe("get"), self.locks.hold(service_ref):
            available = self.prober.available_pods(auto_fix=False)

            destination_rule = self._fetch(DESTINATION_RULE, service_ref)
            if destination_rule.absent:
                self._log_absent(service_ref, destination_rule)
                return None
            virtual_service = self._fetch(VIRTUAL_SERVICE, service_ref)
            if virtual_service.absent:
                self._log_absent(service_ref, virtual_service)
                return None

            return self.resources_to_rules(
                service_ref,
                destination_rule.body or {},
                virtual_service.body or {},
                available,
            )

    def create_all(self, service_ref: ServiceRef, rules: list[RouteRule]) -> None:
        """Create the resource pair for a service that has no policy yet."""
        with self._observe("create"), self.locks.hold(service_ref):
            if not rules:
                raise RouteControllingError(
                    f"No rules given to create for {service_ref}", ErrorKind.BAD_RESOURCE
                )
            self.validate_rules(service_ref, rules)
            self.check_rules(rules)
            destination_rule, virtual_service = self.rules_to_resources(service_ref, rules)
            try:
                self._create(DESTINATION_RULE, destination_rule)
            except TRANSPORT_ERRORS as exc:
                self.logger.exception("Failed to create route resources for %s", service_ref)
                raise RouteControllingError.upstream("Failed to create resources", exc) from exc
            try:
                self._create(VIRTUAL_SERVICE, virtual_service)
            except TRANSPORT_ERRORS as exc:
                self.logger.exception("Failed to create route resources for %s", service_ref)
                self._discard(DESTINATION_RULE, service_ref)
                raise RouteControllingError.upstream("Failed to create resources", exc) from exc
            self.logger.info("Created route resources for %s (%d rules)", service_ref, len(rules))

    def update_all(self, service_ref: ServiceRef, rules: list[RouteRule]) -> None:
        """Replace the full rule set of a service; an empty set deletes the pair."""
        with self._observe("update"), self.locks.hold(service_ref):
            if not rules:
                self._delete_pair(service_ref)
                return

            self.validate_rules(service_ref, rules)
            self.check_rules(rules)
            destination_rule, virtual_service = self.rules_to_resources(service_ref, rules)
            try:
                self._replace(DESTINATION_RULE, destination_rule)
                self._replace(VIRTUAL_SERVICE, virtual_service)
            except TRANSPORT_ERRORS as exc:
                self.logger.exception("Failed to update route resources for %s", service_ref)
                raise RouteControllingError.upstream("Failed to update resources", exc) from exc
            self.logger.info("Updated route resources for %s (%d rules)", service_ref, len(rules))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_rules(self, service_ref: ServiceRef, rules: list[RouteRule]) -> None:
        """Reject rule sets that could not be read back unchanged.

        Raises ``BAD_RESOURCE`` for rules of another service, unnamed rules,
        rules without source or destination pods, destination pods outside
        the service namespace, duplicate rule names, and repeated pods or
        endpoint controls within one rule.
        """
        names: set[str] = set()
        for rule in rules:
            if rule.service_ref != service_ref:
                raise RouteControllingError(
                    f"Rule {rule.name!r} targets {rule.service_ref}, not {service_ref}",
                    ErrorKind.BAD_RESOURCE,
                )
            if not rule.name:
                raise RouteControllingError("Rule name must not be empty", ErrorKind.BAD_RESOURCE)
            if rule.name in names:
                raise RouteControllingError(
                    f"Duplicate rule name {rule.name!r} for {service_ref}", ErrorKind.BAD_RESOURCE
                )
            names.add(rule.name)
            if not rule.src_pods or not rule.des_pods:
                raise RouteControllingError(
                    f"Rule {rule.name!r} needs at least one source and one destination pod",
                    ErrorKind.BAD_RESOURCE,
                )
            for field, values in (
                ("source pods", rule.src_pods),
                ("destination pods", rule.des_pods),
                ("endpoint controls", rule.endpoint_controls),
            ):
                if len(set(values)) != len(values):
                    raise RouteControllingError(
                        f"Rule {rule.name!r} repeats entries in its {field}",
                        ErrorKind.BAD_RESOURCE,
                    )
            foreign = [pod for pod in rule.des_pods if pod.namespace != service_ref.namespace]
            if foreign:
                raise RouteControllingError(
                    f"Destination pods of rule {rule.name!r} must be in namespace "
                    f"{service_ref.namespace}: {', '.join(str(pod) for pod in foreign)}",
                    ErrorKind.BAD_RESOURCE,
                )

    def check_rules(
        self, rules: list[RouteRule], available: set[PodRef] | None = None
    ) -> None:
        """Fail with ``UNMANAGED_PODS`` if any referenced pod is not managed."""
        if available is None:
            available = self.prober.available_pods(auto_fix=self.auto_fix_labels)
        for rule in rules:
            for pod in rule.referenced_pods():
                if pod in available:
                    continue
                self.logger.error(
                    "Pod %s referred by rule %r is not available for route controlling",
                    pod,
                    rule.name,
                )
                raise RouteControllingError(
                    f"Pod {pod} referred in rules is not available for route controlling",
                    ErrorKind.UNMANAGED_PODS,
                )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def rules_to_resources(
        self, service_ref: ServiceRef, rules: list[RouteRule]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Synthesize the ``(DestinationRule, VirtualService)`` bodies for *rules*."""
        destination_rule = build_destination_rule(service_ref, rules)
        virtual_service = build_virtual_service(service_ref, rules)
        self.logger.debug(
            "Synthesized route resources for %s: %s, %s",
            service_ref,
            destination_rule,
            virtual_service,
        )
        return destination_rule, virtual_service

    def resources_to_rules(
        self,
        service_ref: ServiceRef,
        destination_rule: Mapping[str, Any],
        virtual_service: Mapping[str, Any],
        available: set[PodRef],
    ) -> list[RouteRule] | None:
        """Reassemble rules from a fetched resource pair.

        Returns ``None`` when the pair does not describe *service_ref* (host
        mismatch, missing subset or http lists).
        """
        service = service_ref.name
        dr_spec = destination_rule.get("spec")
        vs_spec = virtual_service.get("spec")
        if not isinstance(dr_spec, Mapping) or not isinstance(vs_spec, Mapping):
            self.logger.warning("Route resources for %s have no spec; assuming none exist", service_ref)
            return None

        subsets = dr_spec.get("subsets")
        http_routes = vs_spec.get("http")
        hosts = vs_spec.get("hosts")
        if (
            not isinstance(subsets, list)
            or dr_spec.get("host") != service
            or not isinstance(http_routes, list)
            or not isinstance(hosts, list)
            or service not in hosts
        ):
            self.logger.warning(
                "Route resources for %s do not describe the service; assuming none exist",
                service_ref,
            )
            return None

        valid_subsets = self._valid_subsets(service_ref, subsets, available)

        rules: list[RouteRule] = []
        for route in http_routes:
            rule = self._route_to_rule(service_ref, route, valid_subsets, available)
            if rule is not None:
                rules.append(rule)
        return rules

    def _valid_subsets(
        self, service_ref: ServiceRef, subsets: list[Any], available: set[PodRef]
    ) -> set[str]:
        valid: set[str] = set()
        for subset in subsets:
            if not isinstance(subset, Mapping):
                self._skip("subset", "Found malformed subset %r in %s", subset, service_ref)
                continue
            name = subset.get("name")
            labels = subset.get("labels")
            pod = pod_from_labels(labels)
            if (
                pod is None
                or pod.name != name
                or pod.namespace != service_ref.namespace
                or pod not in available
            ):
                self._skip(
                    "subset",
                    "Found unmatched subset %r with labels %r in %s",
                    name,
                    labels,
                    service_ref,
                )
                continue
            valid.add(pod.name)
        return valid

    def _route_to_rule(
        self,
        service_ref: ServiceRef,
        route: Any,
        valid_subsets: set[str],
        available: set[PodRef],
    ) -> RouteRule | None:
        if not isinstance(route, Mapping):
            self._skip("route", "Found malformed http route %r in %s", route, service_ref)
            return None
        name = route.get("name")
        matches = route.get("match")
        destinations = route.get("route")
        if not isinstance(name, str) or not name or not matches or not destinations:
            self._skip("route", "Found unsupported http route %r in %s", name, service_ref)
            return None
        if not isinstance(matches, list) or not isinstance(destinations, list):
            self._skip("route", "Found unsupported http route %r in %s", name, service_ref)
            return None

        des_pods: list[PodRef] = []
        port = DEFAULT_PORT
        for entry in destinations:
            destination = entry.get("destination") if isinstance(entry, Mapping) else None
            if not isinstance(destination, Mapping):
                self._skip("destination", "Found malformed destination %r in route %r", entry, name)
                continue
            subset = destination.get("subset")
            if destination.get("host") != service_ref.name or not isinstance(subset, str):
                self._skip(
                    "destination",
                    "Found unexpected destination %r(%s) != %s in route %r",
                    destination.get("host"),
                    subset,
                    service_ref,
                    name,
                )
                continue
            if subset not in valid_subsets:
                self._skip(
                    "destination",
                    "Destination subset %r of route %r is not a managed pod subset",
                    subset,
                    name,
                )
                continue
            _append_unique(des_pods, PodRef(namespace=service_ref.namespace, name=subset))
            port_selector = destination.get("port")
            if isinstance(port_selector, Mapping):
                port = _valid_port(port_selector.get("number")) or port

        src_pods: list[PodRef] = []
        controls: list[EndpointControl] = []
        for match in matches:
            source_labels = match.get("sourceLabels") if isinstance(match, Mapping) else None
            src = pod_from_labels(source_labels)
            if src is None or src not in available:
                self._skip(
                    "match",
                    "Found unsupported match source labels %r in route %r",
                    source_labels,
                    name,
                )
                continue
            raw_uri = match.get("uri")
            if raw_uri is not None:
                control = decode_uri_match(raw_uri)
                if control is None:
                    self._skip("match", "Found unsupported uri match %r in route %r", raw_uri, name)
                    continue
                _append_unique(controls, control)
            _append_unique(src_pods, src)

        if not des_pods or not src_pods:
            self._skip(
                "route",
                "Dropping route %r in %s: no usable destinations or matches left",
                name,
                service_ref,
            )
            return None

        return RouteRule(
            namespace=service_ref.namespace,
            des_service=service_ref.name,
            name=name,
            src_pods=tuple(src_pods),
            des_pods=tuple(des_pods),
            endpoint_controls=tuple(controls),
            extra=RuleExtraInfo(port=port),
        )

    # ------------------------------------------------------------------
    # Cluster API helpers
    # ------------------------------------------------------------------

    def _fetch(self, kind: ResourceKind, service_ref: ServiceRef) -> _FetchResult:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=service_ref.namespace,
                plural=kind.plural,
                name=resource_name(service_ref.name),
            )
        except TRANSPORT_ERRORS as exc:
            if is_not_found(exc):
                return _FetchResult(None, f"{kind.kind} not found")
            self.logger.warning(
                "Caught API error reading %s for %s, assuming no rule exists: %s",
                kind.kind,
                service_ref,
                exc,
            )
            return _FetchResult(None, f"{kind.kind} unreadable")
        if not isinstance(body, dict):
            return _FetchResult(None, f"{kind.kind} malformed")
        return _FetchResult(body)

    def _log_absent(self, service_ref: ServiceRef, result: _FetchResult) -> None:
        self.logger.info(
            "No usable route resources for %s (%s); assuming none exist",
            service_ref,
            result.reason,
        )

    def _create(self, kind: ResourceKind, body: dict[str, Any]) -> None:
        self.custom_api.create_namespaced_custom_object(
            group=kind.group,
            version=kind.version,
            namespace=body["metadata"]["namespace"],
            plural=kind.plural,
            body=body,
        )

    def _replace(self, kind: ResourceKind, body: dict[str, Any]) -> None:
        """Replace the object named in *body*, creating it when absent.

        Custom-object updates must carry the current ``resourceVersion``, so
        the live object is read first.
        """
        metadata = body["metadata"]
        try:
            current = self.custom_api.get_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=metadata["namespace"],
                plural=kind.plural,
                name=metadata["name"],
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            self.logger.warning(
                "%s %s/%s missing during update; creating it",
                kind.kind,
                metadata["namespace"],
                metadata["name"],
            )
            self._create(kind, body)
            return

        resource_version = (current.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            body = {**body, "metadata": {**metadata, "resourceVersion": resource_version}}
        self.custom_api.replace_namespaced_custom_object(
            group=kind.group,
            version=kind.version,
            namespace=metadata["namespace"],
            plural=kind.plural,
            name=metadata["name"],
            body=body,
        )

    def _delete_pair(self, service_ref: ServiceRef) -> None:
        for kind in (DESTINATION_RULE, VIRTUAL_SERVICE):
            try:
                self.custom_api.delete_namespaced_custom_object(
                    group=kind.group,
                    version=kind.version,
                    namespace=service_ref.namespace,
                    plural=kind.plural,
                    name=resource_name(service_ref.name),
                )
            except TRANSPORT_ERRORS as exc:
                if is_not_found(exc):
                    self.logger.info("%s for %s already absent", kind.kind, service_ref)
                    continue
                self.logger.exception("Failed to delete %s for %s", kind.kind, service_ref)
                raise RouteControllingError.upstream("Failed to delete resources", exc) from exc
        self.logger.info("Deleted route resources for %s", service_ref)

    def _discard(self, kind: ResourceKind, service_ref: ServiceRef) -> None:
        """Best-effort removal of a half-written pair; failures are only logged."""
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=service_ref.namespace,
                plural=kind.plural,
                name=resource_name(service_ref.name),
            )
        except TRANSPORT_ERRORS as exc:
            if not is_not_found(exc):
                self.logger.warning(
                    "Could not roll back %s for %s: %s", kind.kind, service_ref, exc
                )
            return
        self.logger.info("Rolled back %s for %s", kind.kind, service_ref)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _skip(self, entry: str, message: str, *args: Any) -> None:
        METRICS.skipped_entries_total.labels(entry=entry).inc()
        self.logger.warning(message, *args)

    @contextmanager
    def _observe(self, operation: str) -> Iterator[None]:
        """Record outcome and duration of *operation*.

        Anything that is not already a :class:`RouteControllingError` is
        wrapped as ``UNDEFINED`` so callers only ever see the taxonomy.
        """
        start = time.monotonic()
        outcome = "ok"
        try:
            yield
        except RouteControllingError as exc:
            outcome = exc.kind.value
            raise
        except Exception as exc:
            outcome = ErrorKind.UNDEFINED.value
            self.logger.exception("Unexpected failure during %s", operation)
            raise RouteControllingError(
                f"Unexpected failure during {operation}", ErrorKind.UNDEFINED, exc
            ) from exc
        finally:
            METRICS.reconcile_total.labels(operation=operation, outcome=outcome).inc()
            METRICS.reconcile_duration_seconds.labels(operation=operation).observe(
                time.monotonic() - start
            )
