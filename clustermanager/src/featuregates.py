from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from clustermanager.src.model import ClusterManager, FeatureGate, FeatureGateMode, InstallMode

# Gate names, shared with the hub component binaries.
DEFAULT_CLUSTER_SET = "DefaultClusterSet"
V1BETA1_CSR_API_COMPATIBILITY = "V1beta1CSRAPICompatibility"
MANAGED_CLUSTER_AUTO_APPROVAL = "ManagedClusterAutoApproval"
RESOURCE_CLEANUP = "ResourceCleanup"
CLUSTER_PROFILE = "ClusterProfile"
CLUSTER_IMPORTER = "ClusterImporter"
NIL_EXECUTOR_VALIDATING = "NilExecutorValidating"
MANIFEST_WORK_REPLICA_SET = "ManifestWorkReplicaSet"
CLOUD_EVENTS_DRIVERS = "CloudEventsDrivers"
CLEAN_UP_COMPLETED_MANIFEST_WORK = "CleanUpCompletedManifestWork"
ADDON_MANAGEMENT = "AddonManagement"


class GateContext(str, enum.Enum):
    REGISTRATION = "registration"
    WORK = "work"
    ADDON = "addon"


class GateEffect(str, enum.Enum):
    FLAG = "flag"
    RBAC_RULES = "rbac-rules"
    RESOURCES = "resources"


@dataclass(frozen=True)
class FeatureSpec:
    """Static description of one feature gate.

    ``asserted`` gates are rendered as flags even when nobody requested them,
    because the operator's default differs from the component binary's.
    """

    name: str
    context: GateContext
    defaults: Mapping[InstallMode, bool]
    effects: frozenset[GateEffect] = frozenset({GateEffect.FLAG})
    rbac_rules: tuple[Mapping[str, Any], ...] = ()
    asserted: bool = False

    def default_for(self, mode: InstallMode) -> bool:
        return self.defaults[mode]


def _feature(
    name: str,
    context: GateContext,
    default: bool,
    *,
    hosted_default: bool | None = None,
    effects: Iterable[GateEffect] = (GateEffect.FLAG,),
    rbac_rules: tuple[Mapping[str, Any], ...] = (),
    asserted: bool = False,
) -> FeatureSpec:
    defaults = {
        InstallMode.DEFAULT: default,
        InstallMode.HOSTED: default if hosted_default is None else hosted_default,
    }
    return FeatureSpec(
        name=name,
        context=context,
        defaults=MappingProxyType(defaults),
        effects=frozenset(effects),
        rbac_rules=rbac_rules,
        asserted=asserted,
    )


_FEATURES = (
    _feature(DEFAULT_CLUSTER_SET, GateContext.REGISTRATION, True),
    _feature(V1BETA1_CSR_API_COMPATIBILITY, GateContext.REGISTRATION, False),
    _feature(MANAGED_CLUSTER_AUTO_APPROVAL, GateContext.REGISTRATION, False),
    _feature(RESOURCE_CLEANUP, GateContext.REGISTRATION, True),
    _feature(
        CLUSTER_PROFILE,
        GateContext.REGISTRATION,
        False,
        effects=(GateEffect.FLAG, GateEffect.RBAC_RULES),
        rbac_rules=(
            {
                "apiGroups": ["multicluster.x-k8s.io"],
                "resources": ["clusterprofiles", "clusterprofiles/status"],
                "verbs": ["get", "list", "watch", "create", "update", "patch", "delete"],
            },
        ),
    ),
    _feature(
        CLUSTER_IMPORTER,
        GateContext.REGISTRATION,
        False,
        effects=(GateEffect.FLAG, GateEffect.RBAC_RULES),
        rbac_rules=(
            {
                "apiGroups": ["cluster.x-k8s.io"],
                "resources": ["clusters"],
                "verbs": ["get", "list", "watch"],
            },
        ),
    ),
    _feature(NIL_EXECUTOR_VALIDATING, GateContext.WORK, True, asserted=True),
    _feature(
        MANIFEST_WORK_REPLICA_SET,
        GateContext.WORK,
        True,
        effects=(GateEffect.FLAG, GateEffect.RESOURCES),
        asserted=True,
    ),
    _feature(CLOUD_EVENTS_DRIVERS, GateContext.WORK, False),
    _feature(CLEAN_UP_COMPLETED_MANIFEST_WORK, GateContext.WORK, False),
    _feature(
        ADDON_MANAGEMENT,
        GateContext.ADDON,
        True,
        effects=(GateEffect.RESOURCES,),
    ),
)

REGISTRY: Mapping[tuple[GateContext, str], FeatureSpec] = MappingProxyType(
    {(spec.context, spec.name): spec for spec in _FEATURES}
)


def features_for(context: GateContext) -> list[FeatureSpec]:
    return [spec for (ctx, _), spec in REGISTRY.items() if ctx is context]


@dataclass(frozen=True)
class GateResolution:
    """Outcome of validating one context's requested gates against the registry."""

    context: GateContext
    effective: Mapping[str, bool]
    requested: Mapping[str, bool] = field(default_factory=dict)
    invalid: tuple[str, ...] = ()

    def enabled(self, name: str) -> bool:
        return self.effective.get(name, False)

    def flags(self) -> list[str]:
        """Render ``--feature-gates`` arguments in registry order.

        Only explicitly requested gates and operator-asserted defaults are
        rendered; other gates keep the component binary's own default.
        """
        flags = []
        for spec in features_for(self.context):
            if spec.name in self.requested or spec.asserted:
                value = "true" if self.effective[spec.name] else "false"
                flags.append(f"--feature-gates={spec.name}={value}")
        return flags

    def rbac_rules(self) -> list[dict[str, Any]]:
        rules: list[dict[str, Any]] = []
        for spec in features_for(self.context):
            if GateEffect.RBAC_RULES in spec.effects and self.enabled(spec.name):
                rules.extend(dict(rule) for rule in spec.rbac_rules)
        return rules


def validate(
    requested: Iterable[FeatureGate],
    context: GateContext,
    mode: InstallMode = InstallMode.DEFAULT,
) -> GateResolution:
    """Resolve requested gates for ``context`` into effective on/off values.

    Unknown names, and known names with an unknown mode (as ``Name=mode``),
    are collected in ``invalid`` and have no effect.  Duplicate
    entries are normalized last-wins.  Absent gates take the registry default.
    """
    effective = {spec.name: spec.default_for(mode) for spec in features_for(context)}
    explicit: dict[str, bool] = {}
    invalid: list[str] = []
    for gate in requested:
        if gate.mode is None:
            entry = f"{gate.feature}={gate.unknown_mode}"
            if entry not in invalid:
                invalid.append(entry)
            continue
        if (context, gate.feature) not in REGISTRY:
            if gate.feature not in invalid:
                invalid.append(gate.feature)
            continue
        explicit[gate.feature] = gate.mode is FeatureGateMode.ENABLE

    effective.update(explicit)
    return GateResolution(
        context=context,
        effective=MappingProxyType(effective),
        requested=MappingProxyType(explicit),
        invalid=tuple(invalid),
    )


@dataclass(frozen=True)
class HubFeatureGates:
    registration: GateResolution
    work: GateResolution
    addon: GateResolution

    @property
    def invalid(self) -> list[str]:
        return [
            *self.registration.invalid,
            *self.work.invalid,
            *self.addon.invalid,
        ]

    @classmethod
    def for_cluster_manager(cls, cluster_manager: ClusterManager) -> HubFeatureGates:
        """Validate all three gate lists; an absent configuration means no requests."""
        mode = cluster_manager.mode
        registration = cluster_manager.registration
        work = cluster_manager.work
        addon = cluster_manager.addon_manager
        return cls(
            registration=validate(
                registration.feature_gates if registration else (),
                GateContext.REGISTRATION,
                mode,
            ),
            work=validate(work.feature_gates if work else (), GateContext.WORK, mode),
            addon=validate(addon.feature_gates if addon else (), GateContext.ADDON, mode),
        )
