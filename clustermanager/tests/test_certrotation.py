from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest
from cryptography import x509
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from clustermanager.src.certrotation import (
    CA_BUNDLE_KEY,
    CertRotationController,
    CertRotationLoop,
    RotationConfig,
    RotationError,
    ServingTarget,
    hostnames_of,
    is_issued_by,
    load_key_pair,
    needs_refresh,
    new_serving_cert,
    new_signer,
    parse_bundle,
    serving_targets,
)
from clustermanager.src.model import ClusterManager, InstallMode, ResourceKind
from clustermanager.tests.fakes import FakeClusterManagers, FakeObjectStore, cluster_manager_object

NS = "open-cluster-management-hub"
START = datetime(2024, 1, 15, 8, 0, 0, tzinfo=UTC)
TARGETS = (
    ServingTarget("registration-webhook-serving-cert", ("registration.ns.svc",)),
    ServingTarget("work-webhook-serving-cert", ("work.ns.svc",)),
)
SHORT = RotationConfig(
    signing_cert_validity=timedelta(minutes=10),
    target_cert_validity=timedelta(minutes=2),
    resync_interval=timedelta(seconds=10),
)


class Clock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _controller(
    store: FakeObjectStore, clock: Clock, **kwargs: Any
) -> CertRotationController:
    return CertRotationController(
        store=store, namespace=NS, config=SHORT, targets=TARGETS, now_fn=clock, **kwargs
    )


def _bundle(store: FakeObjectStore) -> list[x509.Certificate]:
    live = store.peek(ResourceKind.CONFIG_MAP, "ca-bundle-configmap", NS)
    return parse_bundle(live["data"][CA_BUNDLE_KEY])


def _serving(store: FakeObjectStore, name: str) -> x509.Certificate:
    pair = load_key_pair(store.peek(ResourceKind.SECRET, name, NS))
    assert pair is not None
    return pair.certificate


def _signer(store: FakeObjectStore) -> x509.Certificate:
    pair = load_key_pair(store.peek(ResourceKind.SECRET, "signer-secret", NS))
    assert pair is not None
    return pair.certificate


def _assert_consistent(store: FakeObjectStore, now: datetime) -> None:
    """Every serving certificate is valid and chains to a CA in the published bundle."""
    bundle = _bundle(store)
    assert any(cert == _signer(store) for cert in bundle)
    for target in TARGETS:
        serving = _serving(store, target.secret_name)
        assert serving.not_valid_before_utc <= now < serving.not_valid_after_utc
        assert any(is_issued_by(serving, ca) for ca in bundle)


def test_rotation_config_rejects_target_longer_than_signer() -> None:
    with pytest.raises(ValueError):
        RotationConfig(
            signing_cert_validity=timedelta(minutes=1), target_cert_validity=timedelta(minutes=2)
        )


def test_signer_is_named_after_namespace_and_time() -> None:
    signer = new_signer(NS, timedelta(minutes=10), START)
    common_name = signer.certificate.subject.rfc4514_string()

    assert common_name == f"CN={NS}_cluster-manager-webhook@{int(START.timestamp())}"
    assert is_issued_by(signer.certificate, signer.certificate)


def test_serving_cert_never_outlives_signer() -> None:
    signer = new_signer(NS, timedelta(minutes=10), START)
    serving = new_serving_cert(signer, ["b.svc", "a.svc"], timedelta(days=1), START)

    assert serving.certificate.not_valid_after_utc == signer.certificate.not_valid_after_utc
    assert hostnames_of(serving.certificate) == ("a.svc", "b.svc")
    assert is_issued_by(serving.certificate, signer.certificate)


def test_needs_refresh_after_fraction_of_lifetime() -> None:
    signer = new_signer(NS, timedelta(minutes=10), START)

    assert not needs_refresh(signer.certificate, START + timedelta(minutes=7), 0.8)
    assert needs_refresh(signer.certificate, START + timedelta(minutes=8, seconds=1), 0.8)
    assert needs_refresh(signer.certificate, START + timedelta(minutes=11), 0.8)


def test_first_tick_issues_signer_bundle_and_serving_certs() -> None:
    store = FakeObjectStore()
    clock = Clock()
    changes: list[str] = []

    report = _controller(store, clock, on_bundle_change=lambda: changes.append("x")).tick()

    assert report.signer_rotated
    assert report.bundle_published
    assert sorted(report.reissued) == sorted(t.secret_name for t in TARGETS)
    assert changes == ["x"]
    assert len(_bundle(store)) == 1
    _assert_consistent(store, clock.now)


def test_steady_state_tick_writes_nothing() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)
    controller.tick()
    store.reset_calls()

    clock.advance(timedelta(seconds=10))
    report = controller.tick()

    assert store.writes == 0
    assert not report.signer_rotated
    assert not report.bundle_published
    assert report.reissued == []


def test_serving_cert_refreshes_before_expiry() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)
    controller.tick()
    before = _serving(store, TARGETS[0].secret_name)

    clock.advance(timedelta(seconds=100))
    report = controller.tick()

    assert TARGETS[0].secret_name in report.reissued
    assert _serving(store, TARGETS[0].secret_name) != before
    _assert_consistent(store, clock.now)


def test_signer_rotation_keeps_old_ca_until_serving_certs_move() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)
    controller.tick()
    clock.advance(timedelta(minutes=7))
    controller.tick()
    old_signer = _signer(store)

    clock.advance(timedelta(seconds=65))
    rotated = controller.tick()

    assert rotated.signer_rotated
    bundle = _bundle(store)
    assert _signer(store) != old_signer
    assert old_signer in bundle
    _assert_consistent(store, clock.now)

    clock.advance(timedelta(seconds=10))
    controller.tick()

    assert _bundle(store) == [_signer(store)]
    _assert_consistent(store, clock.now)


def test_certificates_stay_valid_across_many_rotations() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)

    for _ in range(90):
        controller.tick()
        _assert_consistent(store, clock.now)
        clock.advance(SHORT.resync_interval)


def test_hostname_change_reissues_certificate() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)
    controller.tick()

    controller.targets = [ServingTarget(TARGETS[0].secret_name, ("new.example.com",)), TARGETS[1]]
    report = controller.tick()

    assert report.reissued == [TARGETS[0].secret_name]
    assert hostnames_of(_serving(store, TARGETS[0].secret_name)) == ("new.example.com",)


def test_unparsable_bundle_is_rebuilt() -> None:
    store = FakeObjectStore()
    clock = Clock()
    controller = _controller(store, clock)
    controller.tick()

    store.edit(
        ResourceKind.CONFIG_MAP,
        "ca-bundle-configmap",
        NS,
        lambda obj: obj.update(data={CA_BUNDLE_KEY: "-----BEGIN CERTIFICATE-----\ngarbage"}),
    )
    report = controller.tick()

    assert report.bundle_published
    _assert_consistent(store, clock.now)


def test_api_failure_raises_rotation_error() -> None:
    store = FakeObjectStore()
    store.fail("get", ResourceKind.SECRET, status=500)

    with pytest.raises(RotationError):
        _controller(store, Clock()).tick()


def test_request_timeout_raises_rotation_error() -> None:
    store = FakeObjectStore()
    store.fail("get", ResourceKind.SECRET, error=ReadTimeoutError(None, "/api", "Read timed out."))

    with pytest.raises(RotationError, match="Read timed out"):
        _controller(store, Clock()).tick()


def test_serving_targets_for_each_mode() -> None:
    default = ClusterManager(name="cluster-manager")
    hosted = ClusterManager.from_object(
        cluster_manager_object(
            spec={
                "deployOption": {
                    "mode": "Hosted",
                    "hosted": {"registrationWebhookConfiguration": {"address": "10.0.0.5"}},
                }
            }
        )
    )

    assert [t.hostnames for t in serving_targets(default, NS)] == [
        (f"cluster-manager-registration-webhook.{NS}.svc",),
        (f"cluster-manager-work-webhook.{NS}.svc",),
    ]
    assert hosted.mode is InstallMode.HOSTED
    assert serving_targets(hosted, "cluster-manager") == [
        ServingTarget("registration-webhook-serving-cert", ("10.0.0.5",))
    ]


def test_rotation_loop_covers_each_cluster_manager_and_skips_deleting_ones() -> None:
    store = FakeObjectStore()
    cluster_managers = FakeClusterManagers(
        cluster_manager_object("alive"),
        cluster_manager_object(
            "hosted",
            spec={
                "deployOption": {
                    "mode": "Hosted",
                    "hosted": {"workWebhookConfiguration": {"address": "hub.example.com"}},
                }
            },
        ),
        cluster_manager_object("gone", deleting=True),
    )
    changed: list[str] = []
    loop = CertRotationLoop(
        store, cluster_managers, SHORT, NS, on_bundle_change=changed.append, now_fn=Clock()
    )

    loop.run_once()

    assert sorted(changed) == ["alive", "hosted"]
    assert store.peek(ResourceKind.SECRET, "signer-secret", NS) is not None
    assert store.peek(ResourceKind.SECRET, "work-webhook-serving-cert", "hosted") is not None
    assert store.peek(ResourceKind.SECRET, "signer-secret", "gone") is None


def test_rotation_loop_keeps_going_when_one_cluster_manager_times_out() -> None:
    store = FakeObjectStore()
    store.fail("get", ResourceKind.SECRET, error=ReadTimeoutError(None, "/api", "Read timed out."))
    cluster_managers = FakeClusterManagers(cluster_manager_object("alive"))
    loop = CertRotationLoop(store, cluster_managers, SHORT, NS, now_fn=Clock())

    loop.run_once()

    store.failures.clear()
    loop.run_once()
    assert store.peek(ResourceKind.SECRET, "signer-secret", NS) is not None


def test_rotation_loop_backs_off_after_connection_errors() -> None:
    stop = threading.Event()
    calls: list[int] = []

    class FlakyClusterManagers(FakeClusterManagers):
        def list(self, **kwargs: Any) -> dict[str, Any]:
            calls.append(1)
            if len(calls) == 1:
                raise MaxRetryError(None, "/apis", "connection refused")
            stop.set()
            return super().list(**kwargs)

    loop = CertRotationLoop(
        FakeObjectStore(), FlakyClusterManagers(cluster_manager_object("alive")), SHORT, NS,
        now_fn=Clock(),
    )

    with patch("clustermanager.src.certrotation.random.random", return_value=0.0):
        loop.run_forever(stop)

    assert len(calls) == 2


def test_rotation_loop_forgets_removed_cluster_managers() -> None:
    store = FakeObjectStore()
    cluster_managers = FakeClusterManagers(
        cluster_manager_object("alive"), cluster_manager_object("removed")
    )
    loop = CertRotationLoop(store, cluster_managers, SHORT, NS, now_fn=Clock())
    loop.run_once()
    assert len(loop._controllers) == 2

    del cluster_managers.objects["removed"]
    loop.run_once()

    assert list(loop._controllers) == [("alive", NS)]
