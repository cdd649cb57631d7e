from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from clustermanager.src import labels as hub_labels
from clustermanager.src import manifests
from clustermanager.src.featuregates import (
    ADDON_MANAGEMENT,
    CLOUD_EVENTS_DRIVERS,
    CLUSTER_IMPORTER,
    MANIFEST_WORK_REPLICA_SET,
    GateContext,
    HubFeatureGates,
)
from clustermanager.src.model import (
    ClusterManager,
    InstallMode,
    RegistrationConfiguration,
    ResourceDescriptor,
    ResourceIdentity,
    ResourceKind,
    TargetCluster,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_HUB_NAMESPACE = "open-cluster-management-hub"
SIGNER_SECRET = "signer-secret"
CA_BUNDLE_CONFIGMAP = "ca-bundle-configmap"
REGISTRATION_SERVING_SECRET = "registration-webhook-serving-cert"
WORK_SERVING_SECRET = "work-webhook-serving-cert"
WORK_DRIVER_CONFIG_SECRET = "work-driver-config"
WORK_DRIVER_VOLUME = "workdriverconfig"
EXTERNAL_HUB_KUBECONFIG_SECRET = "external-hub-kubeconfig"
AWS_ROLE_ANNOTATION = "eks.amazonaws.com/role-arn"
KUBE_WORK_DRIVER = "kube"

_EKS_CLUSTER_ARN = re.compile(r"^arn:aws:eks:[a-z0-9-]+:(\d{12}):cluster/([A-Za-z0-9_.-]+)$")
_KNOWN_AUTH_TYPES = ("csr", "awsirsa")

_READ = ("get", "list", "watch")
_WRITE = ("get", "list", "watch", "create", "update", "patch", "delete")


def _rule(group: str, resources: tuple[str, ...], verbs: tuple[str, ...]) -> dict[str, Any]:
    return {"apiGroups": [group], "resources": list(resources), "verbs": list(verbs)}


_COMMON_RULES: tuple[Mapping[str, Any], ...] = (
    _rule("", ("configmaps", "events"), ("get", "list", "watch", "create", "update", "patch")),
    _rule("coordination.k8s.io", ("leases",), ("get", "create", "update")),
    _rule("authorization.k8s.io", ("subjectaccessreviews",), ("create",)),
)


@dataclass(frozen=True)
class Component:
    """One hub workload and the identity/RBAC objects that exist only for it."""

    key: str
    subsystem: str
    role: str
    image_key: str
    service_account: str
    command: tuple[str, ...]
    rules: tuple[Mapping[str, Any], ...]
    owner_gate: tuple[GateContext, str] | None = None
    service: str | None = None
    serving_secret: str | None = None
    extra_role: str | None = None

    def deployment_name(self, cluster_manager: str) -> str:
        return f"{cluster_manager}-{self.key}"

    def role_name(self, cluster_manager: str) -> str:
        return f"open-cluster-management:{cluster_manager}-{self.subsystem}:{self.role}"

    def enabled(self, gates: HubFeatureGates) -> bool:
        if self.owner_gate is None:
            return True
        context, name = self.owner_gate
        resolution = {
            GateContext.REGISTRATION: gates.registration,
            GateContext.WORK: gates.work,
            GateContext.ADDON: gates.addon,
        }[context]
        return resolution.enabled(name)


REGISTRATION_CONTROLLER = Component(
    key="registration-controller",
    subsystem="registration",
    role="controller",
    image_key="registration",
    service_account="registration-controller-sa",
    command=("/registration", "controller"),
    rules=(
        *_COMMON_RULES,
        _rule(
            "cluster.open-cluster-management.io",
            (
                "managedclusters",
                "managedclusters/status",
                "managedclustersets",
                "managedclustersetbindings",
            ),
            ("*",),
        ),
        _rule(
            "certificates.k8s.io",
            ("certificatesigningrequests", "certificatesigningrequests/approval"),
            (*_READ, "update"),
        ),
        _rule(
            "rbac.authorization.k8s.io",
            ("clusterroles", "clusterrolebindings", "roles", "rolebindings"),
            ("*",),
        ),
    ),
)
REGISTRATION_WEBHOOK = Component(
    key="registration-webhook",
    subsystem="registration",
    role="webhook",
    image_key="registration",
    service_account="registration-webhook-sa",
    command=("/registration", "webhook-server"),
    rules=(
        *_COMMON_RULES,
        _rule(
            "cluster.open-cluster-management.io",
            ("managedclustersets/join", "managedclustersets/bind"),
            ("create",),
        ),
    ),
    service="cluster-manager-registration-webhook",
    serving_secret=REGISTRATION_SERVING_SECRET,
)
WORK_WEBHOOK = Component(
    key="work-webhook",
    subsystem="work",
    role="webhook",
    image_key="work",
    service_account="work-webhook-sa",
    command=("/work", "webhook-server"),
    rules=(
        *_COMMON_RULES,
        _rule("work.open-cluster-management.io", ("manifestworks",), _READ),
    ),
    service="cluster-manager-work-webhook",
    serving_secret=WORK_SERVING_SECRET,
)
PLACEMENT_CONTROLLER = Component(
    key="placement-controller",
    subsystem="placement",
    role="controller",
    image_key="placement",
    service_account="placement-controller-sa",
    command=("/placement", "controller"),
    rules=(
        *_COMMON_RULES,
        _rule(
            "cluster.open-cluster-management.io",
            (
                "placements",
                "placements/status",
                "placementdecisions",
                "placementdecisions/status",
                "managedclusters",
                "managedclustersets",
                "managedclustersetbindings",
            ),
            _WRITE,
        ),
    ),
)
WORK_CONTROLLER = Component(
    key="work-controller",
    subsystem="work",
    role="controller",
    image_key="work",
    service_account="work-controller-sa",
    command=("/work", "manager"),
    rules=(
        *_COMMON_RULES,
        _rule(
            "work.open-cluster-management.io",
            ("manifestworks", "manifestworkreplicasets", "manifestworkreplicasets/status"),
            _WRITE,
        ),
        _rule("cluster.open-cluster-management.io", ("placements", "placementdecisions"), _READ),
    ),
    owner_gate=(GateContext.WORK, MANIFEST_WORK_REPLICA_SET),
)
ADDON_MANAGER_CONTROLLER = Component(
    key="addon-manager-controller",
    subsystem="addon-manager",
    role="controller",
    image_key="addon_manager",
    service_account="addon-manager-controller-sa",
    command=("/addon", "manager"),
    rules=(
        *_COMMON_RULES,
        _rule("addon.open-cluster-management.io", ("*",), ("*",)),
        _rule("work.open-cluster-management.io", ("manifestworks",), ("*",)),
    ),
    owner_gate=(GateContext.ADDON, ADDON_MANAGEMENT),
    extra_role="addon-agent",
)

COMPONENTS: tuple[Component, ...] = (
    REGISTRATION_CONTROLLER,
    REGISTRATION_WEBHOOK,
    WORK_WEBHOOK,
    PLACEMENT_CONTROLLER,
    WORK_CONTROLLER,
    ADDON_MANAGER_CONTROLLER,
)

_ADDON_AGENT_RULES: tuple[Mapping[str, Any], ...] = (
    _rule(
        "addon.open-cluster-management.io",
        ("managedclusteraddons", "managedclusteraddons/status"),
        (*_READ, "update", "patch"),
    ),
)


@dataclass(frozen=True)
class WebhookRegistration:
    kind: ResourceKind
    name: str
    component: Component
    api_group: str
    resources: tuple[str, ...]
    path: str


WEBHOOK_REGISTRATIONS: tuple[WebhookRegistration, ...] = (
    WebhookRegistration(
        kind=ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION,
        name="managedclustervalidators.admission.cluster.open-cluster-management.io",
        component=REGISTRATION_WEBHOOK,
        api_group="cluster.open-cluster-management.io",
        resources=("managedclusters", "managedclustersetbindings"),
        path="/validate-cluster-open-cluster-management-io-v1-managedcluster",
    ),
    WebhookRegistration(
        kind=ResourceKind.MUTATING_WEBHOOK_CONFIGURATION,
        name="managedclustermutators.admission.cluster.open-cluster-management.io",
        component=REGISTRATION_WEBHOOK,
        api_group="cluster.open-cluster-management.io",
        resources=("managedclusters",),
        path="/mutate-cluster-open-cluster-management-io-v1-managedcluster",
    ),
    WebhookRegistration(
        kind=ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION,
        name="manifestworkvalidators.admission.work.open-cluster-management.io",
        component=WORK_WEBHOOK,
        api_group="work.open-cluster-management.io",
        resources=("manifestworks",),
        path="/validate-work-open-cluster-management-io-v1-manifestwork",
    ),
)


@dataclass(frozen=True)
class ResolveOptions:
    """Inputs to resolution that come from outside the ClusterManager spec."""

    hub_namespace: str = DEFAULT_HUB_NAMESPACE
    agent_image: str = ""
    sync_labels: bool = True
    ca_bundle: str | None = None
    work_driver_config: Mapping[str, str] | None = None


@dataclass(frozen=True)
class DriverResolution:
    args: tuple[str, ...] = ()
    service_account_annotations: Mapping[str, str] = field(default_factory=dict)
    invalid: tuple[str, ...] = ()


def workload_namespace(cluster_manager: ClusterManager, hub_namespace: str) -> str:
    """Namespace holding workloads and certificate material."""
    if cluster_manager.mode is InstallMode.HOSTED:
        return cluster_manager.name
    return hub_namespace


def workload_cluster(cluster_manager: ClusterManager) -> TargetCluster:
    if cluster_manager.mode is InstallMode.HOSTED:
        return TargetCluster.MANAGEMENT
    return TargetCluster.HUB


def work_driver_enabled(cluster_manager: ClusterManager, gates: HubFeatureGates) -> bool:
    """True when a non-kube work driver is selected and permitted."""
    if cluster_manager.work_driver == KUBE_WORK_DRIVER:
        return False
    return gates.work.enabled(CLOUD_EVENTS_DRIVERS)


def resolve_registration_drivers(config: RegistrationConfiguration | None) -> DriverResolution:
    """Render registration driver settings as controller arguments.

    Drivers with unknown auth types or malformed ARNs are reported in
    ``invalid`` and left out of the rendering.
    """
    if config is None or not config.registration_drivers:
        return DriverResolution()

    args: list[str] = []
    annotations: dict[str, str] = {}
    invalid: list[str] = []
    enabled: list[str] = []
    for driver in config.registration_drivers:
        if driver.auth_type not in _KNOWN_AUTH_TYPES:
            invalid.append(f"unknown registration auth type {driver.auth_type!r}")
            continue
        if driver.auth_type == "csr":
            enabled.append("csr")
            if driver.auto_approved_identities:
                args.append(
                    "--auto-approved-csr-users=" + ",".join(driver.auto_approved_identities)
                )
            continue

        match = _EKS_CLUSTER_ARN.match(driver.hub_cluster_arn or "")
        if match is None:
            invalid.append(f"malformed awsirsa hubClusterArn {driver.hub_cluster_arn!r}")
            continue
        account, cluster_name = match.groups()
        enabled.append("awsirsa")
        args.append(f"--hub-cluster-arn={driver.hub_cluster_arn}")
        if driver.auto_approved_identities:
            args.append(
                "--auto-approved-arn-patterns=" + ",".join(driver.auto_approved_identities)
            )
        if driver.tags:
            args.append("--aws-resource-tags=" + ",".join(driver.tags))
        annotations[AWS_ROLE_ANNOTATION] = (
            f"arn:aws:iam::{account}:role/{cluster_name}_managed-cluster-identity-creator"
        )

    if enabled:
        args.insert(0, "--enabled-registration-drivers=" + ",".join(enabled))
    return DriverResolution(
        args=tuple(args),
        service_account_annotations=MappingProxyType(annotations),
        invalid=tuple(invalid),
    )


class _DescriptorSet:
    def __init__(self) -> None:
        self.items: list[ResourceDescriptor] = []

    def add(
        self,
        kind: ResourceKind,
        content: dict[str, Any],
        *,
        cluster: TargetCluster,
        required: bool = True,
        create_only: bool = False,
        readiness_gate: str | None = None,
        owner: str = "",
    ) -> None:
        metadata = content["metadata"]
        identity = ResourceIdentity(
            kind=kind,
            name=metadata["name"],
            namespace=metadata.get("namespace", "") if kind.namespaced else "",
            cluster=cluster,
        )
        self.items.append(
            ResourceDescriptor(
                identity=identity,
                content=content,
                required=required,
                create_only=create_only,
                readiness_gate=readiness_gate,
                owner=owner,
            )
        )


def _component_args(
    component: Component,
    cluster_manager: ClusterManager,
    gates: HubFeatureGates,
    drivers: DriverResolution,
    options: ResolveOptions,
) -> list[str]:
    args = list(component.command)
    if component.service is not None:
        args += [
            f"--port={manifests.WEBHOOK_PORT}",
            "--tls-cert-file=/serving-cert/tls.crt",
            "--tls-private-key-file=/serving-cert/tls.key",
        ]

    if component.subsystem == "registration":
        args += gates.registration.flags()
    elif component.subsystem == "work":
        args += gates.work.flags()
    elif component.subsystem == "addon-manager":
        args += gates.addon.flags()

    if component is REGISTRATION_CONTROLLER:
        registration = cluster_manager.registration
        if registration is not None and registration.auto_approve_users:
            args.append(
                "--cluster-auto-approval-users=" + ",".join(registration.auto_approve_users)
            )
        args += drivers.args
        if options.sync_labels:
            label_arg = hub_labels.labels_arg(cluster_manager.labels)
            if label_arg is not None:
                args.append(label_arg)
        if gates.registration.enabled(CLUSTER_IMPORTER) and options.agent_image:
            args.append(f"--agent-image={options.agent_image}")

    if component is WORK_CONTROLLER and work_driver_enabled(cluster_manager, gates):
        args += [
            f"--work-driver={cluster_manager.work_driver}",
            "--work-driver-config=/var/run/secrets/work/config.yaml",
        ]

    if cluster_manager.mode is InstallMode.HOSTED:
        args.append("--kubeconfig=/var/run/secrets/hub/kubeconfig")
    return args


def _component_volumes(
    component: Component, cluster_manager: ClusterManager, gates: HubFeatureGates
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    volumes: list[dict[str, Any]] = []
    mounts: list[dict[str, Any]] = []
    if component.serving_secret is not None:
        volumes.append(
            {"name": "webhook-secret", "secret": {"secretName": component.serving_secret}}
        )
        mounts.append({"name": "webhook-secret", "mountPath": "/serving-cert", "readOnly": True})
    if component is WORK_CONTROLLER and work_driver_enabled(cluster_manager, gates):
        volumes.append(
            {"name": WORK_DRIVER_VOLUME, "secret": {"secretName": WORK_DRIVER_CONFIG_SECRET}}
        )
        mounts.append(
            {"name": WORK_DRIVER_VOLUME, "mountPath": "/var/run/secrets/work", "readOnly": True}
        )
    if cluster_manager.mode is InstallMode.HOSTED:
        volumes.append(
            {"name": "kubeconfig", "secret": {"secretName": EXTERNAL_HUB_KUBECONFIG_SECRET}}
        )
        mounts.append({"name": "kubeconfig", "mountPath": "/var/run/secrets/hub", "readOnly": True})
    return volumes, mounts


def resolve(
    cluster_manager: ClusterManager,
    gates: HubFeatureGates,
    options: ResolveOptions | None = None,
) -> list[ResourceDescriptor]:
    """Compute every object the operator manages for ``cluster_manager``.

    Objects owned by a disabled feature are still returned, with
    ``required=False``, so the caller deletes them when present.  The result
    depends only on the arguments.
    """
    options = options or ResolveOptions()
    cm = cluster_manager.name
    user_labels = cluster_manager.labels if options.sync_labels else {}
    hub_ns = options.hub_namespace
    workload_ns = workload_namespace(cluster_manager, hub_ns)
    workload_target = workload_cluster(cluster_manager)
    hosted = cluster_manager.mode is InstallMode.HOSTED
    drivers = resolve_registration_drivers(cluster_manager.registration)
    shared_labels = hub_labels.merge(user_labels, hub_labels.reserved_labels(cm, "clustermanager"))

    out = _DescriptorSet()
    out.add(
        ResourceKind.NAMESPACE,
        manifests.namespace(hub_ns, shared_labels),
        cluster=TargetCluster.HUB,
    )
    if hosted:
        out.add(
            ResourceKind.NAMESPACE,
            manifests.namespace(workload_ns, shared_labels),
            cluster=TargetCluster.MANAGEMENT,
        )
    for group, kind, plural in manifests.HUB_CRDS:
        out.add(
            ResourceKind.CUSTOM_RESOURCE_DEFINITION,
            manifests.custom_resource_definition(group, kind, plural, shared_labels),
            cluster=TargetCluster.HUB,
        )

    # Certificate material is filled in by the rotation loop; create empty
    # placeholders so workloads can mount them before their first start.
    for secret_name in (SIGNER_SECRET, REGISTRATION_SERVING_SECRET, WORK_SERVING_SECRET):
        out.add(
            ResourceKind.SECRET,
            manifests.placeholder_secret(secret_name, workload_ns, shared_labels),
            cluster=workload_target,
            create_only=True,
        )
    out.add(
        ResourceKind.CONFIG_MAP,
        manifests.placeholder_config_map(CA_BUNDLE_CONFIGMAP, workload_ns, shared_labels),
        cluster=workload_target,
        create_only=True,
    )

    driver_secret_wanted = work_driver_enabled(cluster_manager, gates)
    if not driver_secret_wanted or options.work_driver_config is not None:
        out.add(
            ResourceKind.SECRET,
            manifests.opaque_secret(
                WORK_DRIVER_CONFIG_SECRET,
                workload_ns,
                options.work_driver_config or {},
                shared_labels,
            ),
            cluster=workload_target,
            required=driver_secret_wanted,
            owner=CLOUD_EVENTS_DRIVERS,
        )

    for component in COMPONENTS:
        enabled = component.enabled(gates)
        owner = component.owner_gate[1] if component.owner_gate else component.key
        deployment_name = component.deployment_name(cm)
        labels = hub_labels.merge(user_labels, hub_labels.reserved_labels(cm, deployment_name))
        role_name = component.role_name(cm)

        rules = list(component.rules)
        if component is REGISTRATION_CONTROLLER:
            rules += gates.registration.rbac_rules()
        out.add(
            ResourceKind.CLUSTER_ROLE,
            manifests.cluster_role(role_name, rules, labels),
            cluster=TargetCluster.HUB,
            required=enabled,
            owner=owner,
        )
        out.add(
            ResourceKind.CLUSTER_ROLE_BINDING,
            manifests.cluster_role_binding(
                role_name, role_name, component.service_account, hub_ns, labels
            ),
            cluster=TargetCluster.HUB,
            required=enabled,
            owner=owner,
        )
        annotations = (
            drivers.service_account_annotations if component is REGISTRATION_CONTROLLER else None
        )
        out.add(
            ResourceKind.SERVICE_ACCOUNT,
            manifests.service_account(component.service_account, hub_ns, labels, annotations),
            cluster=TargetCluster.HUB,
            required=enabled,
            owner=owner,
        )
        if component.extra_role is not None:
            out.add(
                ResourceKind.CLUSTER_ROLE,
                manifests.cluster_role(
                    f"open-cluster-management:{cm}-{component.subsystem}:{component.extra_role}",
                    _ADDON_AGENT_RULES,
                    labels,
                ),
                cluster=TargetCluster.HUB,
                required=enabled,
                owner=owner,
            )
        if component.service is not None and not hosted:
            out.add(
                ResourceKind.SERVICE,
                manifests.service(component.service, workload_ns, deployment_name, labels),
                cluster=workload_target,
                required=enabled,
                owner=owner,
            )

        volumes, mounts = _component_volumes(component, cluster_manager, gates)
        out.add(
            ResourceKind.DEPLOYMENT,
            manifests.deployment(
                deployment_name,
                workload_ns,
                image=cluster_manager.images[component.image_key],
                args=_component_args(component, cluster_manager, gates, drivers, options),
                service_account_name=component.service_account,
                labels=labels,
                node_selector=cluster_manager.node_placement.node_selector,
                tolerations=cluster_manager.node_placement.tolerations,
                volumes=volumes,
                volume_mounts=mounts,
            ),
            cluster=workload_target,
            required=enabled,
            owner=owner,
        )

    for registration in WEBHOOK_REGISTRATIONS:
        component = registration.component
        url = None
        addressable = True
        if hosted:
            hosted_webhook = (
                cluster_manager.registration_webhook
                if component is REGISTRATION_WEBHOOK
                else cluster_manager.work_webhook
            )
            if hosted_webhook is None:
                # Without an address the configuration must not exist on the hub.
                LOGGER.warning(
                    "ClusterManager %s is Hosted but has no address for %s; not registering it",
                    cm,
                    registration.name,
                )
                addressable = False
            else:
                url = f"https://{hosted_webhook.address}:{hosted_webhook.port}"
        client_config = manifests.webhook_client_config(
            ca_bundle=options.ca_bundle,
            service_name=component.service,
            service_namespace=workload_ns,
            path=registration.path,
            url=url,
        )
        out.add(
            registration.kind,
            manifests.webhook_configuration(
                registration.kind,
                registration.name,
                api_group=registration.api_group,
                resources=registration.resources,
                operations=("CREATE", "UPDATE"),
                client_config=client_config,
                labels=hub_labels.merge(
                    user_labels,
                    hub_labels.reserved_labels(cm, component.deployment_name(cm)),
                ),
            ),
            cluster=TargetCluster.HUB,
            required=addressable and component.enabled(gates),
            readiness_gate=component.deployment_name(cm),
            owner=component.key,
        )

    return out.items
