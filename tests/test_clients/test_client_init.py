"""Tests for client initialization and lazy API loading."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

from pool_upgrade_controller.clients import load_k8s_api_client
from pool_upgrade_controller.clients.k8s_nodes import K8sNodeClient
from pool_upgrade_controller.clients.k8s_pools import K8sPoolStore


class TestLoadK8sApiClient:
    def test_in_cluster_when_service_host_set(self) -> None:
        with (
            patch.dict(os.environ, {"KUBERNETES_SERVICE_HOST": "10.96.0.1"}),
            patch("pool_upgrade_controller.clients.k8s_config.load_incluster_config") as mock_incluster,
            patch("pool_upgrade_controller.clients.new_client_from_config") as mock_kubeconfig,
        ):
            api_client = load_k8s_api_client()

        mock_incluster.assert_called_once()
        assert mock_incluster.call_args.kwargs["client_configuration"] is api_client.configuration
        mock_kubeconfig.assert_not_called()

    def test_kubeconfig_when_outside_cluster(self) -> None:
        env = {k: v for k, v in os.environ.items() if k != "KUBERNETES_SERVICE_HOST"}
        with (
            patch.dict(os.environ, env, clear=True),
            patch("pool_upgrade_controller.clients.k8s_config.load_incluster_config") as mock_incluster,
            patch("pool_upgrade_controller.clients.new_client_from_config") as mock_kubeconfig,
        ):
            api_client = load_k8s_api_client()

        mock_kubeconfig.assert_called_once_with(context=None)
        assert api_client is mock_kubeconfig.return_value
        mock_incluster.assert_not_called()

    def test_explicit_context_wins_over_in_cluster(self) -> None:
        with (
            patch.dict(os.environ, {"KUBERNETES_SERVICE_HOST": "10.96.0.1"}),
            patch("pool_upgrade_controller.clients.k8s_config.load_incluster_config") as mock_incluster,
            patch("pool_upgrade_controller.clients.new_client_from_config") as mock_kubeconfig,
        ):
            load_k8s_api_client("staging")

        mock_kubeconfig.assert_called_once_with(context="staging")
        mock_incluster.assert_not_called()


class TestK8sNodeClientInit:
    def test_lazy_api_creation(self) -> None:
        client = K8sNodeClient("staging")
        assert client._api is None

    def test_get_api_creates_once(self) -> None:
        client = K8sNodeClient("staging")
        with patch("pool_upgrade_controller.clients.k8s_nodes.load_k8s_api_client") as mock_load:
            mock_load.return_value = MagicMock()
            api1 = client._get_api()
            api2 = client._get_api()
        assert api1 is api2
        mock_load.assert_called_once_with("staging")


class TestK8sPoolStoreInit:
    def test_lazy_api_creation(self) -> None:
        store = K8sPoolStore("default")
        assert store._api is None

    def test_get_api_creates_once(self) -> None:
        store = K8sPoolStore("default")
        with patch("pool_upgrade_controller.clients.k8s_pools.load_k8s_api_client") as mock_load:
            mock_load.return_value = MagicMock()
            api1 = store._get_api()
            api2 = store._get_api()
        assert api1 is api2
        mock_load.assert_called_once_with(None)
