from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from clustermanager.src.model import ResourceKind

HUB_CRDS: tuple[tuple[str, str, str], ...] = (
    ("cluster.open-cluster-management.io", "ManagedCluster", "managedclusters"),
    ("cluster.open-cluster-management.io", "ManagedClusterSet", "managedclustersets"),
    (
        "cluster.open-cluster-management.io",
        "ManagedClusterSetBinding",
        "managedclustersetbindings",
    ),
    ("cluster.open-cluster-management.io", "Placement", "placements"),
    ("cluster.open-cluster-management.io", "PlacementDecision", "placementdecisions"),
    ("work.open-cluster-management.io", "ManifestWork", "manifestworks"),
    ("work.open-cluster-management.io", "ManifestWorkReplicaSet", "manifestworkreplicasets"),
    ("addon.open-cluster-management.io", "ClusterManagementAddOn", "clustermanagementaddons"),
    ("addon.open-cluster-management.io", "ManagedClusterAddOn", "managedclusteraddons"),
    ("addon.open-cluster-management.io", "AddOnDeploymentConfig", "addondeploymentconfigs"),
)

_CLUSTER_SCOPED_CRDS = frozenset(
    {"managedclusters", "managedclustersets", "clustermanagementaddons"}
)

WEBHOOK_PORT = 9443


def _metadata(
    name: str,
    namespace: str | None,
    labels: Mapping[str, str],
    annotations: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "labels": dict(labels)}
    if namespace:
        metadata["namespace"] = namespace
    if annotations:
        metadata["annotations"] = dict(annotations)
    return metadata


def _header(kind: ResourceKind) -> dict[str, str]:
    return {"apiVersion": kind.api_version, "kind": kind.kind}


def namespace(name: str, labels: Mapping[str, str]) -> dict[str, Any]:
    return {**_header(ResourceKind.NAMESPACE), "metadata": _metadata(name, None, labels)}


def custom_resource_definition(
    group: str, kind: str, plural: str, labels: Mapping[str, str]
) -> dict[str, Any]:
    return {
        **_header(ResourceKind.CUSTOM_RESOURCE_DEFINITION),
        "metadata": _metadata(f"{plural}.{group}", None, labels),
        "spec": {
            "group": group,
            "names": {
                "kind": kind,
                "listKind": f"{kind}List",
                "plural": plural,
                "singular": kind.lower(),
            },
            "scope": "Cluster" if plural in _CLUSTER_SCOPED_CRDS else "Namespaced",
            "versions": [
                {
                    "name": "v1",
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "x-kubernetes-preserve-unknown-fields": True,
                        }
                    },
                }
            ],
        },
    }


def cluster_role(
    name: str, rules: Sequence[Mapping[str, Any]], labels: Mapping[str, str]
) -> dict[str, Any]:
    return {
        **_header(ResourceKind.CLUSTER_ROLE),
        "metadata": _metadata(name, None, labels),
        "rules": [dict(rule) for rule in rules],
    }


def cluster_role_binding(
    name: str,
    role_name: str,
    service_account: str,
    service_account_namespace: str,
    labels: Mapping[str, str],
) -> dict[str, Any]:
    return {
        **_header(ResourceKind.CLUSTER_ROLE_BINDING),
        "metadata": _metadata(name, None, labels),
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": role_name,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": service_account,
                "namespace": service_account_namespace,
            }
        ],
    }


def service_account(
    name: str,
    ns: str,
    labels: Mapping[str, str],
    annotations: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    return {
        **_header(ResourceKind.SERVICE_ACCOUNT),
        "metadata": _metadata(name, ns, labels, annotations),
    }


def placeholder_secret(name: str, ns: str, labels: Mapping[str, str]) -> dict[str, Any]:
    return {
        **_header(ResourceKind.SECRET),
        "metadata": _metadata(name, ns, labels),
        "type": "kubernetes.io/tls",
        "data": {"tls.crt": "", "tls.key": ""},
    }


def placeholder_config_map(name: str, ns: str, labels: Mapping[str, str]) -> dict[str, Any]:
    return {
        **_header(ResourceKind.CONFIG_MAP),
        "metadata": _metadata(name, ns, labels),
        "data": {},
    }


def opaque_secret(
    name: str, ns: str, data: Mapping[str, str], labels: Mapping[str, str]
) -> dict[str, Any]:
    return {
        **_header(ResourceKind.SECRET),
        "metadata": _metadata(name, ns, labels),
        "type": "Opaque",
        "data": dict(data),
    }


def service(name: str, ns: str, app: str, labels: Mapping[str, str]) -> dict[str, Any]:
    return {
        **_header(ResourceKind.SERVICE),
        "metadata": _metadata(name, ns, labels),
        "spec": {
            "selector": {"app": app},
            "ports": [{"name": "webhook", "port": 443, "targetPort": WEBHOOK_PORT}],
        },
    }


def deployment(
    name: str,
    ns: str,
    *,
    image: str,
    args: Sequence[str],
    service_account_name: str,
    labels: Mapping[str, str],
    node_selector: Mapping[str, str],
    tolerations: Sequence[Mapping[str, Any]],
    volumes: Sequence[Mapping[str, Any]] = (),
    volume_mounts: Sequence[Mapping[str, Any]] = (),
    replicas: int = 1,
) -> dict[str, Any]:
    container: dict[str, Any] = {
        "name": name,
        "image": image,
        "imagePullPolicy": "IfNotPresent",
        "args": list(args),
        "securityContext": {
            "allowPrivilegeEscalation": False,
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
            "capabilities": {"drop": ["ALL"]},
        },
        "resources": {"requests": {"cpu": "2m", "memory": "16Mi"}},
    }
    if volume_mounts:
        container["volumeMounts"] = [dict(mount) for mount in volume_mounts]

    pod_spec: dict[str, Any] = {
        "serviceAccountName": service_account_name,
        "containers": [container],
    }
    if node_selector:
        pod_spec["nodeSelector"] = dict(node_selector)
    if tolerations:
        pod_spec["tolerations"] = [dict(toleration) for toleration in tolerations]
    if volumes:
        pod_spec["volumes"] = [dict(volume) for volume in volumes]

    return {
        **_header(ResourceKind.DEPLOYMENT),
        "metadata": _metadata(name, ns, labels),
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": pod_spec,
            },
        },
    }


def webhook_client_config(
    *,
    ca_bundle: str | None,
    service_name: str | None = None,
    service_namespace: str | None = None,
    path: str,
    url: str | None = None,
) -> dict[str, Any]:
    """Point a webhook at an in-cluster service, or at ``url`` in Hosted mode."""
    client_config: dict[str, Any]
    if url is not None:
        client_config = {"url": f"{url}{path}"}
    else:
        client_config = {
            "service": {
                "name": service_name,
                "namespace": service_namespace,
                "path": path,
                "port": 443,
            }
        }
    if ca_bundle:
        client_config["caBundle"] = ca_bundle
    return client_config


def webhook_configuration(
    kind: ResourceKind,
    name: str,
    *,
    api_group: str,
    resources: Sequence[str],
    operations: Sequence[str],
    client_config: Mapping[str, Any],
    labels: Mapping[str, str],
) -> dict[str, Any]:
    webhook: dict[str, Any] = {
        "name": name,
        "admissionReviewVersions": ["v1"],
        "clientConfig": dict(client_config),
        "failurePolicy": "Fail",
        "sideEffects": "None",
        "timeoutSeconds": 10,
        "rules": [
            {
                "apiGroups": [api_group],
                "apiVersions": ["*"],
                "operations": list(operations),
                "resources": list(resources),
                "scope": "*",
            }
        ],
    }
    return {
        **_header(kind),
        "metadata": _metadata(name, None, labels),
        "webhooks": [webhook],
    }
