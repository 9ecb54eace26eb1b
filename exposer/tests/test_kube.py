from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from exposer.src.kube import (
    ClusterGateway,
    Outcome,
    build_clients,
    load_kube_configuration,
)
from exposer.src.objects import Workload, desired_exposure, desired_routing


def _make_gateway() -> tuple[ClusterGateway, MagicMock, MagicMock, MagicMock]:
    core_api = MagicMock()
    apps_api = MagicMock()
    networking_api = MagicMock()
    gateway = ClusterGateway(
        core_api=core_api,
        apps_api=apps_api,
        networking_api=networking_api,
        request_timeout=7.0,
    )
    return gateway, core_api, apps_api, networking_api


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------


def test_load_kube_configuration_uses_kubeconfig_flag() -> None:
    with (
        patch("exposer.src.kube.config.load_kube_config") as mock_kubeconfig,
        patch("exposer.src.kube.config.load_incluster_config") as mock_incluster,
    ):
        load_kube_configuration("/tmp/kubeconfig")

    mock_kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")
    mock_incluster.assert_not_called()


def test_load_kube_configuration_falls_back_to_in_cluster() -> None:
    with (
        patch(
            "exposer.src.kube.config.load_kube_config",
            side_effect=ConfigException("no kubeconfig"),
        ),
        patch("exposer.src.kube.config.load_incluster_config") as mock_incluster,
    ):
        load_kube_configuration(None)

    mock_incluster.assert_called_once()


def test_load_kube_configuration_falls_back_on_missing_file() -> None:
    with (
        patch(
            "exposer.src.kube.config.load_kube_config",
            side_effect=FileNotFoundError("/nope"),
        ),
        patch("exposer.src.kube.config.load_incluster_config") as mock_incluster,
    ):
        load_kube_configuration("/nope")

    mock_incluster.assert_called_once()


def test_load_kube_configuration_raises_when_nothing_works() -> None:
    with (
        patch(
            "exposer.src.kube.config.load_kube_config",
            side_effect=ConfigException("no kubeconfig"),
        ),
        patch(
            "exposer.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        pytest.raises(ConfigException),
    ):
        load_kube_configuration(None)


def test_build_clients_returns_tuple() -> None:
    with patch("exposer.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.NetworkingV1Api.return_value = SimpleNamespace(name="networking")
        core, apps, networking = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"
    assert networking.name == "networking"


# ---------------------------------------------------------------------------
# ClusterGateway
# ---------------------------------------------------------------------------


def test_get_workload_returns_projection() -> None:
    gateway, _, apps_api, _ = _make_gateway()
    apps_api.read_namespaced_deployment.return_value = SimpleNamespace(
        metadata=SimpleNamespace(namespace="shop", name="checkout", resource_version="3", uid="u"),
        spec=SimpleNamespace(
            template=SimpleNamespace(metadata=SimpleNamespace(labels={"app": "checkout"}))
        ),
    )

    workload = gateway.get_workload("shop", "checkout")

    assert workload == Workload(
        namespace="shop",
        name="checkout",
        pod_labels={"app": "checkout"},
        resource_version="3",
        uid="u",
    )
    apps_api.read_namespaced_deployment.assert_called_once_with(
        name="checkout", namespace="shop", _request_timeout=7.0
    )


def test_get_workload_returns_none_on_404() -> None:
    gateway, _, apps_api, _ = _make_gateway()
    apps_api.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

    assert gateway.get_workload("shop", "checkout") is None


def test_get_workload_propagates_other_errors() -> None:
    gateway, _, apps_api, _ = _make_gateway()
    apps_api.read_namespaced_deployment.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        gateway.get_workload("shop", "checkout")


def test_create_exposure_sends_service_body() -> None:
    gateway, core_api, _, _ = _make_gateway()
    exposure = desired_exposure(
        Workload(namespace="shop", name="checkout", pod_labels={"app": "checkout"})
    )

    assert gateway.create_exposure(exposure) is Outcome.CREATED

    kwargs = core_api.create_namespaced_service.call_args.kwargs
    assert kwargs["namespace"] == "shop"
    assert kwargs["_request_timeout"] == 7.0
    assert kwargs["body"].metadata.name == "checkout-service"
    assert kwargs["body"].spec.selector == {"app": "checkout"}


def test_create_exposure_reports_conflict() -> None:
    gateway, core_api, _, _ = _make_gateway()
    core_api.create_namespaced_service.side_effect = ApiException(status=409, reason="Conflict")

    outcome = gateway.create_exposure(desired_exposure(Workload(namespace="ns", name="api")))

    assert outcome is Outcome.ALREADY_EXISTS


def test_create_exposure_propagates_forbidden() -> None:
    gateway, core_api, _, _ = _make_gateway()
    core_api.create_namespaced_service.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(ApiException):
        gateway.create_exposure(desired_exposure(Workload(namespace="ns", name="api")))


def test_delete_exposure_outcomes() -> None:
    gateway, core_api, _, _ = _make_gateway()

    assert gateway.delete_exposure("ns", "api-service") is Outcome.DELETED
    core_api.delete_namespaced_service.assert_called_once_with(
        name="api-service", namespace="ns", _request_timeout=7.0
    )

    core_api.delete_namespaced_service.side_effect = ApiException(status=404, reason="Not Found")
    assert gateway.delete_exposure("ns", "api-service") is Outcome.NOT_FOUND

    core_api.delete_namespaced_service.side_effect = ApiException(status=500, reason="boom")
    with pytest.raises(ApiException):
        gateway.delete_exposure("ns", "api-service")


def test_create_routing_sends_ingress_body() -> None:
    gateway, _, _, networking_api = _make_gateway()
    routing = desired_routing(desired_exposure(Workload(namespace="shop", name="checkout")))

    assert gateway.create_routing(routing) is Outcome.CREATED

    kwargs = networking_api.create_namespaced_ingress.call_args.kwargs
    assert kwargs["namespace"] == "shop"
    assert kwargs["_request_timeout"] == 7.0
    assert kwargs["body"].metadata.name == "checkout-service-ingress"

    networking_api.create_namespaced_ingress.side_effect = ApiException(status=409, reason="Conflict")
    assert gateway.create_routing(routing) is Outcome.ALREADY_EXISTS


def test_delete_routing_outcomes() -> None:
    gateway, _, _, networking_api = _make_gateway()

    assert gateway.delete_routing("ns", "api-service-ingress") is Outcome.DELETED

    networking_api.delete_namespaced_ingress.side_effect = ApiException(
        status=404, reason="Not Found"
    )
    assert gateway.delete_routing("ns", "api-service-ingress") is Outcome.NOT_FOUND
