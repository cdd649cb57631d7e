from __future__ import annotations

from typing import Any

import pytest

from clustermanager.src.apply import (
    SPEC_HASH_ANNOTATION,
    ApplyAction,
    ApplyError,
    ApplyReconciler,
    GenerationStatus,
    content_hash,
    merge_for_update,
)
from clustermanager.src.featuregates import HubFeatureGates
from clustermanager.src.model import ClusterManager, ResourceDescriptor, ResourceKind, TargetCluster
from clustermanager.src.resolver import DEFAULT_HUB_NAMESPACE, resolve
from clustermanager.tests.fakes import FakeObjectStore, cluster_manager_object, gate_spec

NS = DEFAULT_HUB_NAMESPACE


def _descriptors(spec: dict[str, Any] | None = None) -> list[ResourceDescriptor]:
    cluster_manager = ClusterManager.from_object(cluster_manager_object(spec=spec))
    return resolve(cluster_manager, HubFeatureGates.for_cluster_manager(cluster_manager))


def _always_ready(_: str) -> bool:
    return True


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def reconciler(store: FakeObjectStore) -> ApplyReconciler:
    return ApplyReconciler({TargetCluster.HUB: store, TargetCluster.MANAGEMENT: store})


def test_first_pass_creates_everything(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    result = reconciler.reconcile(_descriptors(), gate=_always_ready)

    assert len(result.created) == 45
    assert len(result.related_resources) == 45
    assert len(result.generations) == 6
    assert store.calls["create"] == 45


def test_second_pass_is_a_no_op(store: FakeObjectStore, reconciler: ApplyReconciler) -> None:
    descriptors = _descriptors()
    first = reconciler.reconcile(descriptors, gate=_always_ready)
    store.reset_calls()

    second = reconciler.reconcile(descriptors, first.generations, gate=_always_ready)

    assert second.operations == 0
    assert store.writes == 0
    assert second.related_resources == first.related_resources
    assert second.generations == first.generations


def test_manual_deployment_edit_is_reverted(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    descriptors = _descriptors()
    first = reconciler.reconcile(descriptors, gate=_always_ready)
    original = store.peek(ResourceKind.DEPLOYMENT, "cluster-manager-placement-controller", NS)
    original_image = original["spec"]["template"]["spec"]["containers"][0]["image"]

    def set_image(obj: dict[str, Any]) -> None:
        obj["spec"]["template"]["spec"]["containers"][0]["image"] = "evil:latest"

    store.edit(ResourceKind.DEPLOYMENT, "cluster-manager-placement-controller", NS, set_image)
    second = reconciler.reconcile(descriptors, first.generations, gate=_always_ready)

    live = store.peek(ResourceKind.DEPLOYMENT, "cluster-manager-placement-controller", NS)
    assert live["spec"]["template"]["spec"]["containers"][0]["image"] == original_image
    assert [identity.name for identity in second.updated] == [
        "cluster-manager-placement-controller"
    ]
    recorded = {g.name: g.last_generation for g in second.generations}
    assert recorded["cluster-manager-placement-controller"] == live["metadata"]["generation"]

    third = reconciler.reconcile(descriptors, second.generations, gate=_always_ready)
    assert third.operations == 0


def test_changed_content_updates_only_affected_objects(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    first = reconciler.reconcile(_descriptors(), gate=_always_ready)

    changed = _descriptors(gate_spec(registration={"ClusterProfile": "Enable"}))
    second = reconciler.reconcile(changed, first.generations, gate=_always_ready)

    assert {identity.name for identity in second.updated} == {
        "open-cluster-management:cluster-manager-registration:controller",
        "cluster-manager-registration-controller",
        "cluster-manager-registration-webhook",
    }
    assert second.created == []
    assert second.deleted == []


def test_disabled_feature_objects_are_deleted(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    first = reconciler.reconcile(_descriptors(), gate=_always_ready)

    disabled = _descriptors(gate_spec(work={"ManifestWorkReplicaSet": "Disable"}))
    second = reconciler.reconcile(disabled, first.generations, gate=_always_ready)

    assert len(second.deleted) == 4
    assert len(second.related_resources) == 41
    assert "cluster-manager-work-controller" not in store.names(ResourceKind.DEPLOYMENT)

    third = reconciler.reconcile(disabled, second.generations, gate=_always_ready)
    assert third.operations == 0


def test_webhooks_are_deferred_until_gate_confirms(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    descriptors = _descriptors()

    first = reconciler.reconcile(descriptors, gate=lambda _: False)
    assert len(first.deferred) == 3
    assert len(first.related_resources) == 42
    assert not store.names(ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION)

    second = reconciler.reconcile(
        descriptors,
        first.generations,
        gate=lambda name: name == "cluster-manager-registration-webhook",
    )
    assert {identity.name for identity in second.created} == {
        "managedclustervalidators.admission.cluster.open-cluster-management.io",
        "managedclustermutators.admission.cluster.open-cluster-management.io",
    }
    assert len(second.deferred) == 1


def test_existing_webhook_survives_readiness_regression(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    descriptors = _descriptors()
    first = reconciler.reconcile(descriptors, gate=_always_ready)

    second = reconciler.reconcile(descriptors, first.generations, gate=lambda _: False)

    assert second.deferred == []
    assert second.deleted == []
    assert len(store.names(ResourceKind.VALIDATING_WEBHOOK_CONFIGURATION)) == 2


def test_create_only_placeholder_is_never_overwritten(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    descriptors = _descriptors()
    first = reconciler.reconcile(descriptors, gate=_always_ready)

    def fill(obj: dict[str, Any]) -> None:
        obj["data"] = {"tls.crt": "Y2VydA==", "tls.key": "a2V5"}

    store.edit(ResourceKind.SECRET, "signer-secret", NS, fill)
    second = reconciler.reconcile(descriptors, first.generations, gate=_always_ready)

    assert second.operations == 0
    assert store.peek(ResourceKind.SECRET, "signer-secret", NS)["data"]["tls.crt"] == "Y2VydA=="


def test_api_failure_is_wrapped(store: FakeObjectStore, reconciler: ApplyReconciler) -> None:
    store.fail("create", ResourceKind.DEPLOYMENT, status=422)

    with pytest.raises(ApplyError) as excinfo:
        reconciler.reconcile(_descriptors(), gate=_always_ready)

    assert excinfo.value.action is ApplyAction.CREATE
    assert excinfo.value.identity.kind is ResourceKind.DEPLOYMENT
    assert excinfo.value.cause.status == 422


def test_delete_all_keeps_selected_kinds(
    store: FakeObjectStore, reconciler: ApplyReconciler
) -> None:
    descriptors = _descriptors()
    reconciler.reconcile(descriptors, gate=_always_ready)

    deleted = reconciler.delete_all(
        descriptors, keep=lambda d: d.kind is ResourceKind.CUSTOM_RESOURCE_DEFINITION
    )

    assert len(deleted) == 35
    assert len(store.objects) == 10
    assert store.names(ResourceKind.CUSTOM_RESOURCE_DEFINITION)


def test_content_hash_ignores_key_order() -> None:
    assert content_hash({"a": 1, "b": {"c": 2}}) == content_hash({"b": {"c": 2}, "a": 1})


def test_merge_for_update_preserves_server_owned_fields() -> None:
    live = {
        "kind": "Service",
        "metadata": {
            "resourceVersion": "7",
            "labels": {"other": "x"},
            "annotations": {"kubectl": "y"},
        },
        "spec": {"clusterIP": "10.0.0.1", "clusterIPs": ["10.0.0.1"]},
    }
    desired = {
        "kind": "Service",
        "metadata": {"labels": {"app": "a"}, "annotations": {SPEC_HASH_ANNOTATION: "h"}},
        "spec": {"ports": []},
    }

    merged = merge_for_update(live, desired)

    assert merged["metadata"]["resourceVersion"] == "7"
    assert merged["metadata"]["labels"] == {"other": "x", "app": "a"}
    assert merged["metadata"]["annotations"] == {"kubectl": "y", SPEC_HASH_ANNOTATION: "h"}
    assert merged["spec"]["clusterIP"] == "10.0.0.1"


def test_generation_status_round_trips_through_status() -> None:
    status = GenerationStatus("apps", "v1", "deployments", NS, "x", 3)

    assert GenerationStatus.from_status(status.as_status()) == status
