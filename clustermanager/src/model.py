from __future__ import annotations

import copy
import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

CLUSTER_MANAGER_GROUP = "operator.open-cluster-management.io"
CLUSTER_MANAGER_VERSION = "v1"
CLUSTER_MANAGER_PLURAL = "clustermanagers"

DEFAULT_IMAGES = {
    "registration": "quay.io/open-cluster-management/registration:latest",
    "work": "quay.io/open-cluster-management/work:latest",
    "placement": "quay.io/open-cluster-management/placement:latest",
    "addon_manager": "quay.io/open-cluster-management/addon-manager:latest",
}


class InstallMode(str, enum.Enum):
    DEFAULT = "Default"
    HOSTED = "Hosted"


class FeatureGateMode(str, enum.Enum):
    ENABLE = "Enable"
    DISABLE = "Disable"


class TargetCluster(str, enum.Enum):
    """Which cluster a managed object lives on.

    In Default mode both targets resolve to the same API server.
    """

    HUB = "hub"
    MANAGEMENT = "management"


class ResourceKind(enum.Enum):
    """Every object kind the operator manages, with its API coordinates."""

    NAMESPACE = ("", "v1", "namespaces", "Namespace", False)
    CUSTOM_RESOURCE_DEFINITION = (
        "apiextensions.k8s.io",
        "v1",
        "customresourcedefinitions",
        "CustomResourceDefinition",
        False,
    )
    CLUSTER_ROLE = ("rbac.authorization.k8s.io", "v1", "clusterroles", "ClusterRole", False)
    CLUSTER_ROLE_BINDING = (
        "rbac.authorization.k8s.io",
        "v1",
        "clusterrolebindings",
        "ClusterRoleBinding",
        False,
    )
    SERVICE_ACCOUNT = ("", "v1", "serviceaccounts", "ServiceAccount", True)
    SECRET = ("", "v1", "secrets", "Secret", True)
    CONFIG_MAP = ("", "v1", "configmaps", "ConfigMap", True)
    SERVICE = ("", "v1", "services", "Service", True)
    DEPLOYMENT = ("apps", "v1", "deployments", "Deployment", True)
    VALIDATING_WEBHOOK_CONFIGURATION = (
        "admissionregistration.k8s.io",
        "v1",
        "validatingwebhookconfigurations",
        "ValidatingWebhookConfiguration",
        False,
    )
    MUTATING_WEBHOOK_CONFIGURATION = (
        "admissionregistration.k8s.io",
        "v1",
        "mutatingwebhookconfigurations",
        "MutatingWebhookConfiguration",
        False,
    )

    def __init__(
        self, group: str, version: str, resource: str, kind: str, namespaced: bool
    ) -> None:
        self.group = group
        self.version = version
        self.resource = resource
        self.kind = kind
        self.namespaced = namespaced

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def is_workload(self) -> bool:
        return self is ResourceKind.DEPLOYMENT


@dataclass(frozen=True)
class ResourceIdentity:
    kind: ResourceKind
    name: str
    namespace: str = ""
    cluster: TargetCluster = TargetCluster.HUB

    def as_related_resource(self) -> dict[str, str]:
        """Render the ``status.relatedResources`` entry for this object."""
        return {
            "group": self.kind.group,
            "version": self.kind.version,
            "resource": self.kind.resource,
            "namespace": self.namespace,
            "name": self.name,
        }

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.kind} {self.namespace}/{self.name}"
        return f"{self.kind.kind} {self.name}"


@dataclass(frozen=True)
class ResourceDescriptor:
    """One object the operator wants to exist (``required``) or not exist.

    ``create_only`` marks placeholders whose content is owned by another loop
    (certificate material): they are created when missing and never
    overwritten.  ``readiness_gate`` names the deployment whose readiness must
    be confirmed before the object is first created.
    """

    identity: ResourceIdentity
    content: Mapping[str, Any]
    required: bool = True
    create_only: bool = False
    readiness_gate: str | None = None
    owner: str = ""

    @property
    def kind(self) -> ResourceKind:
        return self.identity.kind

    def render(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self.content))


@dataclass(frozen=True)
class FeatureGate:
    feature: str
    mode: FeatureGateMode | None
    # Set when the requested mode is not one the API accepts; such gates are invalid.
    unknown_mode: str | None = None


@dataclass(frozen=True)
class RegistrationDriver:
    auth_type: str
    auto_approved_identities: tuple[str, ...] = ()
    hub_cluster_arn: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class RegistrationConfiguration:
    auto_approve_users: tuple[str, ...] = ()
    registration_drivers: tuple[RegistrationDriver, ...] = ()
    feature_gates: tuple[FeatureGate, ...] = ()


@dataclass(frozen=True)
class WorkConfiguration:
    work_driver: str = "kube"
    feature_gates: tuple[FeatureGate, ...] = ()


@dataclass(frozen=True)
class AddOnManagerConfiguration:
    feature_gates: tuple[FeatureGate, ...] = ()


@dataclass(frozen=True)
class NodePlacement:
    node_selector: Mapping[str, str] = field(default_factory=dict)
    tolerations: tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class HostedWebhook:
    address: str
    port: int = 443


@dataclass(frozen=True)
class ClusterManager:
    """Parsed view of a ``ClusterManager`` custom resource.

    Read-only to the reconciler; ``status`` is carried along so conditions can
    keep their transition times.
    """

    name: str
    generation: int = 0
    labels: Mapping[str, str] = field(default_factory=dict)
    mode: InstallMode = InstallMode.DEFAULT
    registration: RegistrationConfiguration | None = None
    work: WorkConfiguration | None = None
    addon_manager: AddOnManagerConfiguration | None = None
    node_placement: NodePlacement = field(default_factory=NodePlacement)
    images: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_IMAGES))
    registration_webhook: HostedWebhook | None = None
    work_webhook: HostedWebhook | None = None
    finalizers: tuple[str, ...] = ()
    deleting: bool = False
    status: Mapping[str, Any] = field(default_factory=dict)

    @property
    def work_driver(self) -> str:
        return self.work.work_driver if self.work is not None else "kube"

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> ClusterManager:
        """Build a :class:`ClusterManager` from the API's JSON representation."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}

        mode_raw = (spec.get("deployOption") or {}).get("mode") or InstallMode.DEFAULT.value
        try:
            mode = InstallMode(mode_raw)
        except ValueError:
            LOGGER.warning(
                "Unknown install mode %r on ClusterManager %s; using Default",
                mode_raw,
                metadata.get("name"),
            )
            mode = InstallMode.DEFAULT

        hosted = (spec.get("deployOption") or {}).get("hosted") or {}

        images = dict(DEFAULT_IMAGES)
        for key, spec_key in (
            ("registration", "registrationImagePullSpec"),
            ("work", "workImagePullSpec"),
            ("placement", "placementImagePullSpec"),
            ("addon_manager", "addOnManagerImagePullSpec"),
        ):
            if spec.get(spec_key):
                images[key] = spec[spec_key]

        placement = spec.get("nodePlacement") or {}
        return cls(
            name=metadata.get("name", ""),
            generation=int(metadata.get("generation") or 0),
            labels=dict(metadata.get("labels") or {}),
            mode=mode,
            registration=_parse_registration(spec.get("registrationConfiguration")),
            work=_parse_work(spec.get("workConfiguration")),
            addon_manager=_parse_addon(spec.get("addOnManagerConfiguration")),
            node_placement=NodePlacement(
                node_selector=dict(placement.get("nodeSelector") or {}),
                tolerations=tuple(placement.get("tolerations") or ()),
            ),
            images=images,
            registration_webhook=_parse_hosted_webhook(
                hosted.get("registrationWebhookConfiguration")
            ),
            work_webhook=_parse_hosted_webhook(hosted.get("workWebhookConfiguration")),
            finalizers=tuple(metadata.get("finalizers") or ()),
            deleting=bool(metadata.get("deletionTimestamp")),
            status=copy.deepcopy(dict(obj.get("status") or {})),
        )


def _parse_feature_gates(raw: Any) -> tuple[FeatureGate, ...]:
    gates: list[FeatureGate] = []
    for entry in raw or ():
        name = (entry or {}).get("feature")
        if not name:
            continue
        mode_raw = entry.get("mode") or FeatureGateMode.DISABLE.value
        try:
            gates.append(FeatureGate(feature=name, mode=FeatureGateMode(mode_raw)))
        except ValueError:
            gates.append(FeatureGate(feature=name, mode=None, unknown_mode=str(mode_raw)))
    return tuple(gates)


def _parse_registration(raw: Any) -> RegistrationConfiguration | None:
    if raw is None:
        return None
    drivers = []
    for entry in raw.get("registrationDrivers") or ():
        csr = entry.get("csr") or {}
        irsa = entry.get("awsirsa") or {}
        identities = csr.get("autoApprovedIdentities") or irsa.get("autoApprovedIdentities") or ()
        drivers.append(
            RegistrationDriver(
                auth_type=entry.get("authType", ""),
                auto_approved_identities=tuple(identities),
                hub_cluster_arn=irsa.get("hubClusterArn"),
                tags=tuple(irsa.get("tags") or ()),
            )
        )
    return RegistrationConfiguration(
        auto_approve_users=tuple(raw.get("autoApproveUsers") or ()),
        registration_drivers=tuple(drivers),
        feature_gates=_parse_feature_gates(raw.get("featureGates")),
    )


def _parse_work(raw: Any) -> WorkConfiguration | None:
    if raw is None:
        return None
    return WorkConfiguration(
        work_driver=raw.get("workDriver") or "kube",
        feature_gates=_parse_feature_gates(raw.get("featureGates")),
    )


def _parse_addon(raw: Any) -> AddOnManagerConfiguration | None:
    if raw is None:
        return None
    return AddOnManagerConfiguration(feature_gates=_parse_feature_gates(raw.get("featureGates")))


def _parse_hosted_webhook(raw: Any) -> HostedWebhook | None:
    if not raw or not raw.get("address"):
        return None
    return HostedWebhook(address=raw["address"], port=int(raw.get("port") or 443))
