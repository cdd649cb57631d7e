from __future__ import annotations

from clustermanager.src.featuregates import (
    ADDON_MANAGEMENT,
    CLOUD_EVENTS_DRIVERS,
    CLUSTER_IMPORTER,
    CLUSTER_PROFILE,
    DEFAULT_CLUSTER_SET,
    MANIFEST_WORK_REPLICA_SET,
    NIL_EXECUTOR_VALIDATING,
    GateContext,
    HubFeatureGates,
    features_for,
    validate,
)
from clustermanager.src.model import (
    ClusterManager,
    FeatureGate,
    FeatureGateMode,
    InstallMode,
    RegistrationConfiguration,
    WorkConfiguration,
)

ENABLE = FeatureGateMode.ENABLE
DISABLE = FeatureGateMode.DISABLE


def test_absent_gates_take_registry_defaults() -> None:
    resolution = validate((), GateContext.WORK)

    assert resolution.enabled(MANIFEST_WORK_REPLICA_SET)
    assert resolution.enabled(NIL_EXECUTOR_VALIDATING)
    assert not resolution.enabled(CLOUD_EVENTS_DRIVERS)
    assert resolution.invalid == ()


def test_unknown_gate_is_reported_and_ignored() -> None:
    resolution = validate(
        [FeatureGate("NoSuchGate", ENABLE), FeatureGate(DEFAULT_CLUSTER_SET, DISABLE)],
        GateContext.REGISTRATION,
    )

    assert resolution.invalid == ("NoSuchGate",)
    assert not resolution.enabled(DEFAULT_CLUSTER_SET)
    assert "NoSuchGate" not in resolution.effective


def test_gate_from_another_context_is_invalid() -> None:
    resolution = validate([FeatureGate(ADDON_MANAGEMENT, DISABLE)], GateContext.WORK)

    assert resolution.invalid == (ADDON_MANAGEMENT,)


def test_duplicate_entries_resolve_last_wins() -> None:
    resolution = validate(
        [FeatureGate(CLUSTER_PROFILE, ENABLE), FeatureGate(CLUSTER_PROFILE, DISABLE)],
        GateContext.REGISTRATION,
    )

    assert not resolution.enabled(CLUSTER_PROFILE)


def test_flags_render_requested_and_asserted_gates_only() -> None:
    resolution = validate([FeatureGate(CLOUD_EVENTS_DRIVERS, ENABLE)], GateContext.WORK)

    assert resolution.flags() == [
        f"--feature-gates={NIL_EXECUTOR_VALIDATING}=true",
        f"--feature-gates={MANIFEST_WORK_REPLICA_SET}=true",
        f"--feature-gates={CLOUD_EVENTS_DRIVERS}=true",
    ]


def test_flags_follow_registry_order_not_request_order() -> None:
    resolution = validate(
        [FeatureGate(CLUSTER_IMPORTER, ENABLE), FeatureGate(DEFAULT_CLUSTER_SET, ENABLE)],
        GateContext.REGISTRATION,
    )

    assert resolution.flags() == [
        f"--feature-gates={DEFAULT_CLUSTER_SET}=true",
        f"--feature-gates={CLUSTER_IMPORTER}=true",
    ]


def test_rbac_rules_only_for_enabled_gates() -> None:
    off = validate((), GateContext.REGISTRATION)
    on = validate([FeatureGate(CLUSTER_PROFILE, ENABLE)], GateContext.REGISTRATION)

    assert off.rbac_rules() == []
    assert on.rbac_rules()[0]["apiGroups"] == ["multicluster.x-k8s.io"]


def test_every_context_has_registered_features() -> None:
    for context in GateContext:
        assert features_for(context)


def test_hub_feature_gates_collects_invalid_names_across_contexts() -> None:
    cluster_manager = ClusterManager(
        name="cluster-manager",
        mode=InstallMode.HOSTED,
        registration=RegistrationConfiguration(feature_gates=(FeatureGate("Bogus", ENABLE),)),
        work=WorkConfiguration(
            feature_gates=(
                FeatureGate(MANIFEST_WORK_REPLICA_SET, DISABLE),
                FeatureGate("AlsoBogus", ENABLE),
            )
        ),
    )

    gates = HubFeatureGates.for_cluster_manager(cluster_manager)

    assert gates.invalid == ["Bogus", "AlsoBogus"]
    assert not gates.work.enabled(MANIFEST_WORK_REPLICA_SET)
    assert gates.addon.enabled(ADDON_MANAGEMENT)


def test_gate_with_unknown_mode_is_invalid_and_keeps_default() -> None:
    cluster_manager = ClusterManager.from_object(
        {
            "metadata": {"name": "cluster-manager"},
            "spec": {
                "registrationConfiguration": {
                    "featureGates": [{"feature": DEFAULT_CLUSTER_SET, "mode": "Sometimes"}]
                }
            },
        }
    )

    gates = HubFeatureGates.for_cluster_manager(cluster_manager)

    assert gates.invalid == [f"{DEFAULT_CLUSTER_SET}=Sometimes"]
    assert gates.registration.enabled(DEFAULT_CLUSTER_SET)
    assert gates.registration.flags() == []
