from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Closed set of failure causes reported by the route controller."""

    UNDEFINED = "undefined"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    UNMANAGED_PODS = "unmanaged_pods"
    BAD_POD_LABELS = "bad_pod_labels"
    BAD_RESOURCE = "bad_resource"
    RESOURCE_NOT_FOUND = "resource_not_found"
    BAD_UPSTREAM = "bad_upstream"


class RouteControllingError(RuntimeError):
    """Raised for every failure that leaves the route controller.

    ``cause`` keeps the underlying cluster API error (if any) so the request
    layer can log it; callers should also chain with ``raise ... from cause``.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNDEFINED,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause

    @classmethod
    def upstream(cls, message: str, cause: BaseException) -> RouteControllingError:
        return cls(message, ErrorKind.BAD_UPSTREAM, cause)

    def __str__(self) -> str:
        if self.cause is None:
            return f"{self.message} ({self.kind.value})"
        return f"{self.message} ({self.kind.value}): {self.cause}"
