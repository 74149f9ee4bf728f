from __future__ import annotations

import pytest

from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.labels import LABEL_NAME, LABEL_NS
from routectl.src.models import PodRef
from routectl.src.pods import PodAvailabilityProber
from routectl.tests.fakes import FakeCoreApi, managed_labels


def test_includes_only_pods_labelled_with_their_own_identity() -> None:
    core_api = FakeCoreApi(
        {
            ("shop", "good"): managed_labels("shop", "good"),
            ("shop", "copied"): managed_labels("shop", "good"),
            ("shop", "wrong-ns"): managed_labels("other", "wrong-ns"),
            ("shop", "bare"): None,
            ("shop", "partial"): {LABEL_NAME: "partial"},
        }
    )

    available = PodAvailabilityProber(core_api).available_pods()

    assert available == {PodRef("shop", "good")}
    assert core_api.patches == []


def test_auto_fix_patches_mislabelled_pods() -> None:
    core_api = FakeCoreApi(
        {
            ("shop", "copied"): {"app": "x", **managed_labels("shop", "good")},
            ("shop", "bare"): None,
            ("shop", "partial"): {LABEL_NAME: "partial"},
        }
    )

    available = PodAvailabilityProber(core_api).available_pods(auto_fix=True)

    assert available == {
        PodRef("shop", "copied"),
        PodRef("shop", "bare"),
        PodRef("shop", "partial"),
    }
    assert core_api.pods[("shop", "copied")] == {"app": "x", **managed_labels("shop", "copied")}
    assert core_api.pods[("shop", "bare")] == managed_labels("shop", "bare")
    assert core_api.pods[("shop", "partial")] == managed_labels("shop", "partial")


def test_auto_fix_failure_excludes_pod(caplog: pytest.LogCaptureFixture) -> None:
    core_api = FakeCoreApi({("shop", "stubborn"): {"app": "x"}}, fail_patch={"stubborn"})

    with caplog.at_level("WARNING"):
        available = PodAvailabilityProber(core_api).available_pods(auto_fix=True)

    assert available == set()
    assert any("Failed to fix convention labels" in r.getMessage() for r in caplog.records)


def test_namespace_scope_limits_listing() -> None:
    core_api = FakeCoreApi(
        {
            ("shop", "a"): managed_labels("shop", "a"),
            ("billing", "b"): managed_labels("billing", "b"),
        }
    )

    available = PodAvailabilityProber(core_api, namespace="billing").available_pods()

    assert available == {PodRef("billing", "b")}


def test_listing_failure_raises_bad_pod_labels() -> None:
    core_api = FakeCoreApi(fail_list=True)

    with pytest.raises(RouteControllingError) as excinfo:
        PodAvailabilityProber(core_api).available_pods()

    assert excinfo.value.kind is ErrorKind.BAD_POD_LABELS
    assert excinfo.value.cause is not None


def test_pods_without_identity_are_ignored() -> None:
    core_api = FakeCoreApi({("shop", ""): {LABEL_NAME: "", LABEL_NS: "shop"}})

    assert PodAvailabilityProber(core_api).available_pods(auto_fix=True) == set()
    assert core_api.patches == []
