from __future__ import annotations

import pytest

from routectl.src.models import (
    EndpointControl,
    MatchMode,
    PodRef,
    RouteRule,
    RouteRuleId,
    RuleExtraInfo,
    ServiceRef,
)
from routectl.src.resources import decode_uri_match, encode_uri_match, resource_name


def test_refs_have_structural_equality() -> None:
    assert PodRef("shop", "a") == PodRef("shop", "a")
    assert {PodRef("shop", "a"), PodRef("shop", "a")} == {PodRef("shop", "a")}
    assert str(ServiceRef("shop", "reviews")) == "shop/reviews"


@pytest.mark.parametrize(
    ("legacy", "mode"),
    [(False, MatchMode.EXACT), (True, MatchMode.REGEX), (None, MatchMode.PREFIX)],
)
def test_match_mode_legacy_mapping(legacy: bool | None, mode: MatchMode) -> None:
    assert MatchMode.from_legacy(legacy) is mode
    assert mode.to_legacy() is legacy


def test_extra_info_defaults_to_port_80_and_validates_range() -> None:
    assert RuleExtraInfo().port == 80
    with pytest.raises(ValueError):
        RuleExtraInfo(port=0)
    with pytest.raises(ValueError):
        RuleExtraInfo(port=70000)


def test_rule_service_ref_and_referenced_pods() -> None:
    rule = RouteRule(
        namespace="shop",
        des_service="reviews",
        name="a",
        src_pods=(PodRef("shop", "f"),),
        des_pods=(PodRef("shop", "r"),),
    )

    assert rule.service_ref == ServiceRef("shop", "reviews")
    assert rule.referenced_pods() == (PodRef("shop", "f"), PodRef("shop", "r"))
    assert RouteRuleId("shop", "reviews").service_ref == rule.service_ref


def test_resource_name_is_prefixed() -> None:
    assert resource_name("reviews") == "routectl-reviews"


@pytest.mark.parametrize("mode", list(MatchMode))
def test_uri_match_uses_single_key_mapping(mode: MatchMode) -> None:
    control = EndpointControl("/api", mode)

    encoded = encode_uri_match(control)

    assert encoded == {mode.value: "/api"}
    assert decode_uri_match(encoded) == control


@pytest.mark.parametrize(
    "raw",
    [{"glob": "/x"}, {"exact": "/a", "prefix": "/b"}, {}, {"exact": 3}, "exact", None],
)
def test_decode_uri_match_rejects_malformed_values(raw: object) -> None:
    assert decode_uri_match(raw) is None
