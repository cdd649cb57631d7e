from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from typing import Any, Protocol

import yaml
from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException
from kubernetes.config.config_exception import ConfigException

from clustermanager.src.model import (
    CLUSTER_MANAGER_GROUP,
    CLUSTER_MANAGER_PLURAL,
    CLUSTER_MANAGER_VERSION,
    ResourceIdentity,
    ResourceKind,
)

LOGGER = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def api_client_from_kubeconfig(kubeconfig: str) -> ApiClient:
    """Build an API client from the text of a kubeconfig file."""
    parsed = yaml.safe_load(kubeconfig)
    if not isinstance(parsed, dict):
        raise ConfigException("kubeconfig is not a YAML mapping")
    return config.new_client_from_config_dict(parsed)


def decode_secret_value(secret: dict[str, Any] | None, key: str) -> str | None:
    """Return the decoded value of ``key`` in a Secret, or None when absent."""
    if not secret:
        return None
    raw = (secret.get("data") or {}).get(key)
    if not raw:
        return None
    return base64.b64decode(raw).decode("utf-8")


class ObjectStore(Protocol):
    """Single-object primitives on one cluster, keyed by resource identity.

    Objects are plain JSON dicts.  ``get`` returns None for missing objects;
    ``delete`` of a missing object is not an error.
    """

    def get(self, identity: ResourceIdentity) -> dict[str, Any] | None: ...

    def create(self, identity: ResourceIdentity, body: dict[str, Any]) -> dict[str, Any]: ...

    def replace(self, identity: ResourceIdentity, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, identity: ResourceIdentity) -> None: ...


class _KindOps:
    def __init__(
        self,
        read: Callable[..., Any],
        create: Callable[..., Any],
        replace: Callable[..., Any],
        delete: Callable[..., Any],
    ) -> None:
        self.read = read
        self.create = create
        self.replace = replace
        self.delete = delete


class KubeObjectStore:
    """:class:`ObjectStore` backed by the typed Kubernetes API clients.

    Every call carries ``request_timeout`` so no reconcile pass blocks
    indefinitely on a stalled API server.
    """

    def __init__(self, api_client: ApiClient | None = None, request_timeout: float = 30) -> None:
        self.api_client = api_client or ApiClient()
        self.request_timeout = request_timeout
        core = client.CoreV1Api(self.api_client)
        apps = client.AppsV1Api(self.api_client)
        rbac = client.RbacAuthorizationV1Api(self.api_client)
        extensions = client.ApiextensionsV1Api(self.api_client)
        admission = client.AdmissionregistrationV1Api(self.api_client)
        self._ops: dict[ResourceKind, _KindOps] = {
            ResourceKind.NAMESPACE: _KindOps(
                core.read_namespace,
                core.create_namespace,
                core.replace_namespace,
                core.delete_namespace,
            ),
            ResourceKind.CUSTOM_RESOURCE_DEFINITION: _KindOps(
                extensions.read_custom_resource_definition,
                extensions.create_custom_resource_definition,
                extensions.replace_custom_resource_definition,
                extensions.delete_custom_resource_definition,
            ),
            ResourceKind.CLUSTER_ROLE: _KindOps(
                rbac.read_cluster_role,
                rbac.create_cluster_role,
                rbac.replace_cluster_role,
                rbac.delete_cluster_role,
            ),
            ResourceKind.CLUSTER_ROLE_BINDING: _KindOps(
                rbac.read_cluster_role_binding,
                rbac.create_cluster_role_binding,
                rbac.replace_cluster_role_binding,
                rbac.delete_cluster_role_binding,
            ),
            ResourceKind.SERVICE_ACCOUNT: _KindOps(
                core.read_namespaced_service_account,
                core.create_namespaced_service_account,
                core.replace_namespaced_service_account,
                core.delete_namespaced_service_account,
            ),
            ResourceKind.SECRET: _KindOps(
                core.read_namespaced_secret,
                core.create_namespaced_secret,
                core.replace_namespaced_secret,
                core.delete_namespaced_secret,
            ),
            ResourceKind.CONFIG_MAP: _KindOps(
                core.read_namespaced_config_map,
                core.create_namespaced_config_map,
                core.replace_namespaced_config_map,
                core.delete_namespaced_config_map,
            ),
            ResourceKind.SERVICE: _KindOps(
                core.read_namespaced_service,
                core.create_namespaced_service,
                core.replace_namespaced_service,
                core.delete_namespaced_service,
            ),
            ResourceKind.DEPLOYMENT: _KindOps(
                apps.read_namespaced_deployment,
                apps.create_namespaced_deployment,
                apps.replace_namespaced_deployment,
                apps.delete_namespaced_deployment,
            ),
            ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION: _KindOps(
                admission.read_validating_webhook_configuration,
                admission.create_validating_webhook_configuration,
                admission.replace_validating_webhook_configuration,
                admission.delete_validating_webhook_configuration,
            ),
            ResourceKind.MUTATING_WEBHOOK_CONFIGURATION: _KindOps(
                admission.read_mutating_webhook_configuration,
                admission.create_mutating_webhook_configuration,
                admission.replace_mutating_webhook_configuration,
                admission.delete_mutating_webhook_configuration,
            ),
        }

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    def _scope(self, identity: ResourceIdentity) -> dict[str, Any]:
        if identity.kind.namespaced:
            return {"namespace": identity.namespace}
        return {}

    def get(self, identity: ResourceIdentity) -> dict[str, Any] | None:
        ops = self._ops[identity.kind]
        try:
            obj = ops.read(
                name=identity.name,
                _request_timeout=self.request_timeout,
                **self._scope(identity),
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return self._to_dict(obj)

    def create(self, identity: ResourceIdentity, body: dict[str, Any]) -> dict[str, Any]:
        ops = self._ops[identity.kind]
        obj = ops.create(body=body, _request_timeout=self.request_timeout, **self._scope(identity))
        return self._to_dict(obj)

    def replace(self, identity: ResourceIdentity, body: dict[str, Any]) -> dict[str, Any]:
        ops = self._ops[identity.kind]
        obj = ops.replace(
            name=identity.name,
            body=body,
            _request_timeout=self.request_timeout,
            **self._scope(identity),
        )
        return self._to_dict(obj)

    def delete(self, identity: ResourceIdentity) -> None:
        ops = self._ops[identity.kind]
        try:
            ops.delete(
                name=identity.name,
                _request_timeout=self.request_timeout,
                **self._scope(identity),
            )
        except ApiException as exc:
            if exc.status != 404:
                raise


class ClusterManagerClient:
    """Access to the cluster-scoped ``ClusterManager`` custom resources."""

    def __init__(self, api_client: ApiClient | None = None, request_timeout: float = 30) -> None:
        self.custom_api = client.CustomObjectsApi(api_client)
        self.request_timeout = request_timeout

    def _coordinates(self) -> dict[str, str]:
        return {
            "group": CLUSTER_MANAGER_GROUP,
            "version": CLUSTER_MANAGER_VERSION,
            "plural": CLUSTER_MANAGER_PLURAL,
        }

    def get(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_cluster_custom_object(
                name=name, _request_timeout=self.request_timeout, **self._coordinates()
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def list(self, **kwargs: Any) -> dict[str, Any]:
        kwargs.setdefault("_request_timeout", self.request_timeout)
        return self.custom_api.list_cluster_custom_object(**self._coordinates(), **kwargs)

    def list_function(self) -> Callable[..., Any]:
        """Return the list callable used to open a watch stream."""
        return self.custom_api.list_cluster_custom_object

    def watch_arguments(self) -> dict[str, str]:
        return self._coordinates()

    def patch_status(self, name: str, status: dict[str, Any]) -> dict[str, Any]:
        return self.custom_api.patch_cluster_custom_object_status(
            name=name,
            body={"status": status},
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout,
            **self._coordinates(),
        )

    def set_finalizers(self, name: str, finalizers: list[str]) -> dict[str, Any]:
        return self.custom_api.patch_cluster_custom_object(
            name=name,
            body={"metadata": {"finalizers": finalizers}},
            _content_type=MERGE_PATCH,
            _request_timeout=self.request_timeout,
            **self._coordinates(),
        )
