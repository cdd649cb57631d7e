from __future__ import annotations

import base64
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from clustermanager.src.kube import (
    MERGE_PATCH,
    ClusterManagerClient,
    KubeObjectStore,
    api_client_from_kubeconfig,
    decode_secret_value,
    load_kube_configuration,
)
from clustermanager.src.model import ResourceIdentity, ResourceKind


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("clustermanager.src.kube.config.load_incluster_config") as mock_incluster,
        patch("clustermanager.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    with (
        patch(
            "clustermanager.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("clustermanager.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_api_client_from_kubeconfig_parses_yaml() -> None:
    with patch("clustermanager.src.kube.config.new_client_from_config_dict") as new_client:
        api_client_from_kubeconfig("apiVersion: v1\nkind: Config\n")

    new_client.assert_called_once_with({"apiVersion": "v1", "kind": "Config"})


def test_api_client_from_kubeconfig_rejects_non_mapping() -> None:
    with pytest.raises(ConfigException):
        api_client_from_kubeconfig("just a string")


def test_decode_secret_value() -> None:
    secret = {"data": {"kubeconfig": base64.b64encode(b"hello").decode()}}

    assert decode_secret_value(secret, "kubeconfig") == "hello"
    assert decode_secret_value(secret, "missing") is None
    assert decode_secret_value(None, "kubeconfig") is None


class TestKubeObjectStore:
    def _store(self) -> tuple[KubeObjectStore, MagicMock]:
        with patch("clustermanager.src.kube.client") as mock_client:
            api_client = MagicMock()
            api_client.sanitize_for_serialization.side_effect = lambda obj: {"obj": obj}
            store = KubeObjectStore(api_client, request_timeout=5)
        return store, mock_client

    def test_namespaced_read_passes_namespace_and_timeout(self) -> None:
        store, mock_client = self._store()
        core = mock_client.CoreV1Api.return_value
        core.read_namespaced_secret.return_value = "secret"

        result = store.get(ResourceIdentity(ResourceKind.SECRET, "s", "ns"))

        core.read_namespaced_secret.assert_called_once_with(
            name="s", _request_timeout=5, namespace="ns"
        )
        assert result == {"obj": "secret"}

    def test_cluster_scoped_create_has_no_namespace(self) -> None:
        store, mock_client = self._store()
        rbac = mock_client.RbacAuthorizationV1Api.return_value

        store.create(ResourceIdentity(ResourceKind.CLUSTER_ROLE, "r"), {"kind": "ClusterRole"})

        rbac.create_cluster_role.assert_called_once_with(
            body={"kind": "ClusterRole"}, _request_timeout=5
        )

    def test_missing_object_reads_as_none(self) -> None:
        store, mock_client = self._store()
        apps = mock_client.AppsV1Api.return_value
        apps.read_namespaced_deployment.side_effect = ApiException(status=404)

        assert store.get(ResourceIdentity(ResourceKind.DEPLOYMENT, "d", "ns")) is None

    def test_other_errors_propagate(self) -> None:
        store, mock_client = self._store()
        apps = mock_client.AppsV1Api.return_value
        apps.read_namespaced_deployment.side_effect = ApiException(status=500)

        with pytest.raises(ApiException):
            store.get(ResourceIdentity(ResourceKind.DEPLOYMENT, "d", "ns"))

    def test_delete_of_missing_object_is_ignored(self) -> None:
        store, mock_client = self._store()
        admission = mock_client.AdmissionregistrationV1Api.return_value
        admission.delete_validating_webhook_configuration.side_effect = ApiException(status=404)

        store.delete(ResourceIdentity(ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION, "w"))


class TestClusterManagerClient:
    def _client(self) -> tuple[ClusterManagerClient, MagicMock]:
        with patch("clustermanager.src.kube.client") as mock_client:
            cm_client = ClusterManagerClient(request_timeout=7)
        return cm_client, mock_client.CustomObjectsApi.return_value

    def test_get_returns_none_when_absent(self) -> None:
        cm_client, custom = self._client()
        custom.get_cluster_custom_object.side_effect = ApiException(status=404)

        assert cm_client.get("cluster-manager") is None

    def test_patch_status_uses_merge_patch(self) -> None:
        cm_client, custom = self._client()

        cm_client.patch_status("cluster-manager", {"observedGeneration": 2})

        kwargs = custom.patch_cluster_custom_object_status.call_args.kwargs
        assert kwargs["body"] == {"status": {"observedGeneration": 2}}
        assert kwargs["_content_type"] == MERGE_PATCH
        assert kwargs["plural"] == "clustermanagers"

    def test_set_finalizers(self) -> None:
        cm_client, custom = self._client()

        cm_client.set_finalizers("cluster-manager", ["a"])

        kwargs = custom.patch_cluster_custom_object.call_args.kwargs
        assert kwargs["body"] == {"metadata": {"finalizers": ["a"]}}

    def test_watch_arguments_match_list_function(self) -> None:
        cm_client, custom = self._client()

        assert cm_client.list_function() is custom.list_cluster_custom_object
        assert cm_client.watch_arguments() == {
            "group": "operator.open-cluster-management.io",
            "version": "v1",
            "plural": "clustermanagers",
        }

    def test_list_is_bounded_by_request_timeout(self) -> None:
        cm_client, custom = self._client()

        cm_client.list()

        kwargs = custom.list_cluster_custom_object.call_args.kwargs
        assert kwargs["_request_timeout"] == 7
        assert kwargs["plural"] == "clustermanagers"
