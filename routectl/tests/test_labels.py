from __future__ import annotations

from routectl.src.labels import (
    LABEL_NAME,
    LABEL_NS,
    Label,
    as_label,
    convention_labels,
    label_patch,
    labels_identify,
    pod_from_labels,
)
from routectl.src.models import PodRef, RouteRule, TrafficDirection

POD = PodRef(namespace="shop", name="frontend-1")


def test_as_label_encodes_direction_and_service() -> None:
    rule = RouteRule(namespace="shop", des_service="reviews", name="canary")

    assert as_label(rule, TrafficDirection.IN) == Label("routectl-in--shop--reviews", "canary")
    assert as_label(rule, TrafficDirection.OUT).key == "routectl-out--shop--reviews"


def test_convention_labels_name_the_pod() -> None:
    assert convention_labels(POD) == {LABEL_NAME: "frontend-1", LABEL_NS: "shop"}


def test_labels_identify() -> None:
    assert labels_identify({LABEL_NAME: "frontend-1", LABEL_NS: "shop", "app": "x"}, POD)
    assert not labels_identify({LABEL_NAME: "frontend-1"}, POD)
    assert not labels_identify({LABEL_NAME: "frontend-2", LABEL_NS: "shop"}, POD)
    assert not labels_identify(None, POD)


def test_pod_from_labels_requires_exactly_the_two_keys() -> None:
    assert pod_from_labels({LABEL_NAME: "frontend-1", LABEL_NS: "shop"}) == POD
    assert pod_from_labels({LABEL_NAME: "frontend-1", LABEL_NS: "shop", "x": "y"}) is None
    assert pod_from_labels({LABEL_NAME: "frontend-1"}) is None
    assert pod_from_labels({LABEL_NAME: "", LABEL_NS: "shop"}) is None
    assert pod_from_labels(None) is None
    assert pod_from_labels(["not", "a", "map"]) is None


def test_label_patch_adds_label_map_when_pod_has_none() -> None:
    assert label_patch(POD, None) == [
        {"op": "add", "path": "/metadata/labels", "value": convention_labels(POD)}
    ]


def test_label_patch_picks_add_or_replace_per_key() -> None:
    patch = label_patch(POD, {LABEL_NAME: "stale", "app": "frontend"})

    assert patch == [
        {"op": "replace", "path": f"/metadata/labels/{LABEL_NAME}", "value": "frontend-1"},
        {"op": "add", "path": f"/metadata/labels/{LABEL_NS}", "value": "shop"},
    ]


def test_label_patch_is_empty_when_labels_already_correct() -> None:
    assert label_patch(POD, convention_labels(POD)) == []
