from __future__ import annotations

import sys
from typing import Any
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from kubernetes.client import ApiException

from routectl.src.api import configure_tracing, create_app
from routectl.src.controller import RouteController
from routectl.src.models import ServiceRef
from routectl.src.service import RouteRuleService
from routectl.tests.fakes import FakeCoreApi, FakeCustomObjectsApi


def _rule_body(name: str = "canary", **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "namespace": "shop",
        "desService": "reviews",
        "name": name,
        "srcPods": [{"namespace": "shop", "name": "frontend-1"}],
        "desPods": [{"namespace": "shop", "name": "reviews-v2"}],
        "endpointControls": [{"uri": "/api/v2", "useRegex": None}],
        "extraInfo": {"portNumber": 9080},
    }
    body.update(overrides)
    return body


@pytest.fixture
def custom_api() -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi()


@pytest.fixture
def controller(custom_api: FakeCustomObjectsApi) -> RouteController:
    core_api = FakeCoreApi()
    core_api.add_managed("shop", "frontend-1", "reviews-v1", "reviews-v2")
    return RouteController(core_api=core_api, custom_api=custom_api)


@pytest.fixture
def client(controller: RouteController) -> TestClient:
    app = create_app(RouteRuleService(controller), version="test")
    return TestClient(app, raise_server_exceptions=False)


def test_openapi_contains_documented_paths(client: TestClient) -> None:
    schema = client.get("/openapi.json")
    assert schema.status_code == 200
    paths = schema.json()["paths"]
    for path in ("/route-rules/all", "/route-rules/add", "/route-rules/delete", "/healthz", "/readyz", "/metrics"):
        assert path in paths


def test_add_then_list_contract(client: TestClient) -> None:
    added = client.post("/route-rules/add", json=_rule_body())
    assert added.status_code == 200
    assert added.json()["success"] is True

    listed = client.post(
        "/route-rules/all",
        params={"exact": "true"},
        json={"namespace": "shop", "desService": "reviews", "name": "canary"},
    )
    assert listed.status_code == 200
    rules = listed.json()
    assert len(rules) == 1
    assert rules[0]["name"] == "canary"
    assert rules[0]["srcPods"] == [{"namespace": "shop", "name": "frontend-1"}]
    assert rules[0]["endpointControls"] == [
        {"uri": "/api/v2", "matchMode": "prefix", "useRegex": None}
    ]
    assert rules[0]["extraInfo"] == {"portNumber": 9080}


def test_list_without_policy_returns_empty_list(client: TestClient) -> None:
    response = client.post("/route-rules/all", json={"namespace": "shop", "desService": "reviews"})
    assert response.status_code == 200
    assert response.json() == []


def test_add_duplicate_without_overwrite_is_bad_request(client: TestClient) -> None:
    client.post("/route-rules/add", json=_rule_body())

    duplicate = client.post("/route-rules/add", json=_rule_body())
    overwritten = client.post(
        "/route-rules/add", params={"allowOverwrite": "true"}, json=_rule_body()
    )

    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "bad_resource"
    assert overwritten.status_code == 200


def test_unmanaged_pod_is_unprocessable(client: TestClient, custom_api: FakeCustomObjectsApi) -> None:
    response = client.post(
        "/route-rules/add",
        json=_rule_body(srcPods=[{"namespace": "shop", "name": "ghost"}]),
    )

    assert response.status_code == 422
    assert response.json()["error"] == "unmanaged_pods"
    assert custom_api.mutating_calls() == []


def test_locked_service_is_conflict(client: TestClient, controller: RouteController) -> None:
    with controller.locks.hold(ServiceRef("shop", "reviews")):
        response = client.post(
            "/route-rules/all", json={"namespace": "shop", "desService": "reviews"}
        )

    assert response.status_code == 409
    assert response.json()["error"] == "concurrency_conflict"


def test_upstream_failure_is_service_unavailable(
    client: TestClient, custom_api: FakeCustomObjectsApi
) -> None:
    custom_api.failures["create"] = ApiException(status=500, reason="boom")

    response = client.post("/route-rules/add", json=_rule_body())

    assert response.status_code == 503
    assert response.json() == {"error": "bad_upstream", "detail": "Failed to create resources"}


def test_delete_contract(client: TestClient, custom_api: FakeCustomObjectsApi) -> None:
    client.post("/route-rules/add", json=_rule_body())

    deleted = client.post(
        "/route-rules/delete", json={"namespace": "shop", "desService": "reviews", "name": "canary"}
    )
    missing = client.post(
        "/route-rules/delete", json={"namespace": "shop", "desService": "reviews", "name": "canary"}
    )

    assert deleted.status_code == 200
    assert custom_api.objects == {}
    assert missing.status_code == 404
    assert missing.json()["error"] == "resource_not_found"


def test_invalid_body_is_rejected_by_validation(client: TestClient) -> None:
    response = client.post("/route-rules/add", json=_rule_body(extraInfo={"portNumber": 0}))
    assert response.status_code == 422


def test_probes_and_metrics_contract(client: TestClient) -> None:
    assert client.get("/healthz").text == "ok"
    assert client.get("/readyz").text == "ok"

    client.post("/route-rules/all", json={"namespace": "shop", "desService": "reviews"})
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text
    assert "routectl_reconcile_total" in response.text


def test_internal_error_contract(controller: RouteController) -> None:
    app = create_app(RouteRuleService(controller))

    @app.get("/contract-boom")
    def contract_boom() -> str:
        raise RuntimeError("boom")

    client = TestClient(app, raise_server_exceptions=False)
    response = client.get("/contract-boom")

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "detail": "An unexpected error occurred.",
    }


def test_tracing_disabled_by_default(
    controller: RouteController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("OTEL_ENABLED", raising=False)
    logger = MagicMock()

    configure_tracing(create_app(RouteRuleService(controller)), logger)

    logger.warning.assert_not_called()
    logger.info.assert_not_called()


def test_tracing_without_packages_logs_warning(
    controller: RouteController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("OTEL_ENABLED", raising=False)
    app = create_app(RouteRuleService(controller))
    monkeypatch.setenv("OTEL_ENABLED", "true")
    monkeypatch.setitem(sys.modules, "opentelemetry", None)
    logger = MagicMock()

    configure_tracing(app, logger)

    logger.warning.assert_called_once()
    assert "tracing disabled" in logger.warning.call_args.args[0]
