from __future__ import annotations

import base64
import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

import yaml
from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api
from kubernetes.config.config_exception import ConfigException

from clustermanager.src.apply import ApplyError, ApplyReconciler, GenerationStatus
from clustermanager.src.conditions import (
    ApplyOutcome,
    WorkDriverSecretState,
    WorkloadObservation,
    aggregate,
    utc_now_rfc3339,
)
from clustermanager.src.featuregates import HubFeatureGates
from clustermanager.src.kube import (
    ClusterManagerClient,
    KubeObjectStore,
    ObjectStore,
    api_client_from_kubeconfig,
    decode_secret_value,
)
from clustermanager.src.labels import HUB_LABEL_KEY
from clustermanager.src.metrics import METRICS
from clustermanager.src.model import (
    ClusterManager,
    InstallMode,
    ResourceIdentity,
    ResourceKind,
    TargetCluster,
)
from clustermanager.src.resolver import (
    CA_BUNDLE_CONFIGMAP,
    COMPONENTS,
    EXTERNAL_HUB_KUBECONFIG_SECRET,
    KUBE_WORK_DRIVER,
    WORK_DRIVER_CONFIG_SECRET,
    ResolveOptions,
    resolve,
    resolve_registration_drivers,
    work_driver_enabled,
    workload_cluster,
    workload_namespace,
)
from clustermanager.src.workqueue import ReconcileQueue

LOGGER = logging.getLogger(__name__)

CLEANUP_FINALIZER = "operator.open-cluster-management.io/cluster-manager-cleanup"
WORK_DRIVER_CONFIG_KEY = "config.yaml"
CA_BUNDLE_KEY = "ca-bundle.crt"
HUB_KUBECONFIG_KEY = "kubeconfig"


class HubAccessError(RuntimeError):
    """The hub cluster of a Hosted ClusterManager cannot be reached yet."""


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass, for logging and tests."""

    name: str
    related_resources: int
    operations: int
    deferred: int
    status_written: bool


class ClusterManagerController:
    """Reconciles one ClusterManager at a time into hub workloads and status.

    A pass validates feature gates, resolves the desired object set, applies
    it, observes the workloads and writes conditions back.  Passes are
    deterministic in their inputs, so a failed pass is simply run again.
    """

    def __init__(
        self,
        cluster_managers: ClusterManagerClient,
        store: ObjectStore,
        *,
        hub_namespace: str,
        operator_namespace: str,
        agent_image: str = "",
        sync_labels: bool = True,
        request_timeout: float = 30,
        hub_store_factory: Callable[[ClusterManager], ObjectStore] | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.cluster_managers = cluster_managers
        self.store = store
        self.hub_namespace = hub_namespace
        self.operator_namespace = operator_namespace
        self.agent_image = agent_image
        self.sync_labels = sync_labels
        self.request_timeout = request_timeout
        self.hub_store_factory = hub_store_factory or self._hosted_hub_store
        self.now_fn = now_fn
        self._hub_stores: dict[str, tuple[str, ObjectStore]] = {}

    def _hosted_hub_store(self, cluster_manager: ClusterManager) -> ObjectStore:
        identity = ResourceIdentity(
            kind=ResourceKind.SECRET,
            name=EXTERNAL_HUB_KUBECONFIG_SECRET,
            namespace=cluster_manager.name,
            cluster=TargetCluster.MANAGEMENT,
        )
        kubeconfig = decode_secret_value(self.store.get(identity), HUB_KUBECONFIG_KEY)
        if kubeconfig is None:
            raise HubAccessError(
                f"waiting for secret {cluster_manager.name}/{EXTERNAL_HUB_KUBECONFIG_SECRET}"
            )
        digest = sha256(kubeconfig.encode("utf-8")).hexdigest()
        cached = self._hub_stores.get(cluster_manager.name)
        if cached is not None and cached[0] == digest:
            return cached[1]
        try:
            api_client = api_client_from_kubeconfig(kubeconfig)
        except (ConfigException, yaml.YAMLError) as exc:
            raise HubAccessError(
                f"secret {cluster_manager.name}/{EXTERNAL_HUB_KUBECONFIG_SECRET} "
                f"holds an unusable kubeconfig: {exc}"
            ) from exc
        store = KubeObjectStore(api_client, request_timeout=self.request_timeout)
        self._hub_stores[cluster_manager.name] = (digest, store)
        return store

    def _stores_for(self, cluster_manager: ClusterManager) -> dict[TargetCluster, ObjectStore]:
        if cluster_manager.mode is InstallMode.HOSTED:
            return {
                TargetCluster.HUB: self.hub_store_factory(cluster_manager),
                TargetCluster.MANAGEMENT: self.store,
            }
        return {TargetCluster.HUB: self.store, TargetCluster.MANAGEMENT: self.store}

    def _work_driver_config(
        self, cluster_manager: ClusterManager, gates: HubFeatureGates
    ) -> tuple[WorkDriverSecretState | None, dict[str, str] | None]:
        """Read and validate the work-driver config secret from the operator namespace."""
        if not work_driver_enabled(cluster_manager, gates):
            if cluster_manager.work_driver != KUBE_WORK_DRIVER:
                LOGGER.warning(
                    "ClusterManager %s selects work driver %s but CloudEventsDrivers is "
                    "disabled; using %s",
                    cluster_manager.name,
                    cluster_manager.work_driver,
                    KUBE_WORK_DRIVER,
                )
            return None, None

        identity = ResourceIdentity(
            kind=ResourceKind.SECRET,
            name=WORK_DRIVER_CONFIG_SECRET,
            namespace=self.operator_namespace,
            cluster=TargetCluster.MANAGEMENT,
        )
        try:
            source = self.store.get(identity)
        except ApiException:
            LOGGER.exception("Failed to read %s", identity)
            return WorkDriverSecretState.MISSING, None
        raw = decode_secret_value(source, WORK_DRIVER_CONFIG_KEY)
        if source is None or raw is None:
            return WorkDriverSecretState.MISSING, None
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError:
            parsed = None
        if not isinstance(parsed, dict):
            return WorkDriverSecretState.INVALID, None
        return WorkDriverSecretState.SYNCED, dict(source.get("data") or {})

    def _ca_bundle(self, cluster_manager: ClusterManager) -> str | None:
        """Return the published CA bundle, base64-encoded for webhook client configs."""
        identity = ResourceIdentity(
            kind=ResourceKind.CONFIG_MAP,
            name=CA_BUNDLE_CONFIGMAP,
            namespace=workload_namespace(cluster_manager, self.hub_namespace),
            cluster=TargetCluster.MANAGEMENT,
        )
        try:
            live = self.store.get(identity)
        except ApiException:
            LOGGER.exception("Failed to read %s", identity)
            return None
        bundle = ((live or {}).get("data") or {}).get(CA_BUNDLE_KEY)
        if not bundle:
            return None
        return base64.b64encode(bundle.encode("utf-8")).decode("ascii")

    def _observe(
        self, cluster_manager: ClusterManager, deployment_name: str, store: ObjectStore
    ) -> WorkloadObservation:
        namespace = workload_namespace(cluster_manager, self.hub_namespace)
        identity = ResourceIdentity(
            kind=ResourceKind.DEPLOYMENT,
            name=deployment_name,
            namespace=namespace,
            cluster=workload_cluster(cluster_manager),
        )
        try:
            live = store.get(identity)
        except ApiException:
            LOGGER.warning("Could not read status of %s", identity, exc_info=True)
            return WorkloadObservation.unreadable(deployment_name, namespace)
        return WorkloadObservation.from_deployment(deployment_name, namespace, live)

    def _observe_all(
        self,
        cluster_manager: ClusterManager,
        gates: HubFeatureGates,
        stores: Mapping[TargetCluster, ObjectStore],
    ) -> dict[str, WorkloadObservation]:
        store = stores[workload_cluster(cluster_manager)]
        observations = {}
        for component in COMPONENTS:
            if not component.enabled(gates):
                continue
            name = component.deployment_name(cluster_manager.name)
            observations[name] = self._observe(cluster_manager, name, store)
        return observations

    def _write_status(
        self, cluster_manager: ClusterManager, status: dict[str, Any]
    ) -> bool:
        current = {key: cluster_manager.status.get(key) for key in status}
        if current == status:
            return False
        self.cluster_managers.patch_status(cluster_manager.name, status)
        return True

    def reconcile(self, name: str) -> ReconcileResult | None:
        """Run one pass for ClusterManager ``name``.

        Raises :class:`ApplyError` or :class:`HubAccessError` after recording
        the failure in status, so the caller can retry with backoff.
        """
        raw = self.cluster_managers.get(name)
        if raw is None:
            LOGGER.info("ClusterManager %s no longer exists", name)
            return None
        cluster_manager = ClusterManager.from_object(raw)
        gates = HubFeatureGates.for_cluster_manager(cluster_manager)
        if gates.invalid:
            LOGGER.warning(
                "ClusterManager %s requests unknown feature gates: %s",
                name,
                ", ".join(gates.invalid),
            )

        if cluster_manager.deleting:
            return self._cleanup(cluster_manager, gates)

        if CLEANUP_FINALIZER not in cluster_manager.finalizers:
            self.cluster_managers.set_finalizers(
                name, [*cluster_manager.finalizers, CLEANUP_FINALIZER]
            )

        drivers = resolve_registration_drivers(cluster_manager.registration)
        secret_state, driver_config = self._work_driver_config(cluster_manager, gates)
        ca_bundle = self._ca_bundle(cluster_manager)
        options = ResolveOptions(
            hub_namespace=self.hub_namespace,
            agent_image=self.agent_image,
            sync_labels=self.sync_labels,
            ca_bundle=ca_bundle,
            work_driver_config=driver_config,
        )
        previous = [
            GenerationStatus.from_status(entry)
            for entry in cluster_manager.status.get("generations") or []
        ]
        status_conditions = list(cluster_manager.status.get("conditions") or [])

        def condition_list(outcome: ApplyOutcome, observations: Mapping[str, Any]) -> list:
            return aggregate(
                status_conditions,
                cluster_manager=name,
                generation=cluster_manager.generation,
                gates=gates,
                observations=observations,
                outcome=outcome,
                invalid_drivers=drivers.invalid,
                secret_state=secret_state,
                now=self.now_fn(),
            )

        try:
            stores = self._stores_for(cluster_manager)
        except HubAccessError as exc:
            self._write_status(
                cluster_manager,
                {"conditions": condition_list(ApplyOutcome(error=str(exc)), {})},
            )
            raise

        workload_store = stores[workload_cluster(cluster_manager)]

        def webhook_backend_ready(deployment_name: str) -> bool:
            if ca_bundle is None:
                return False
            return self._observe(cluster_manager, deployment_name, workload_store).serving

        descriptors = resolve(cluster_manager, gates, options)
        try:
            result = ApplyReconciler(stores).reconcile(
                descriptors, previous, gate=webhook_backend_ready
            )
        except ApplyError as exc:
            observations = self._observe_all(cluster_manager, gates, stores)
            self._write_status(
                cluster_manager,
                {"conditions": condition_list(ApplyOutcome(error=str(exc)), observations)},
            )
            raise

        observations = self._observe_all(cluster_manager, gates, stores)
        outcome = ApplyOutcome(deferred=tuple(identity.name for identity in result.deferred))
        status = {
            "observedGeneration": cluster_manager.generation,
            "conditions": condition_list(outcome, observations),
            "relatedResources": result.related_resources,
            "generations": [entry.as_status() for entry in result.generations],
        }
        written = self._write_status(cluster_manager, status)
        METRICS.related_resources.labels(cluster_manager=name).set(len(result.related_resources))
        if result.operations or written:
            LOGGER.info(
                "Reconciled ClusterManager %s: %d created, %d updated, %d deleted, %d deferred",
                name,
                len(result.created),
                len(result.updated),
                len(result.deleted),
                len(result.deferred),
            )
        return ReconcileResult(
            name=name,
            related_resources=len(result.related_resources),
            operations=result.operations,
            deferred=len(result.deferred),
            status_written=written,
        )

    def _cleanup(
        self, cluster_manager: ClusterManager, gates: HubFeatureGates
    ) -> ReconcileResult | None:
        """Delete everything the ClusterManager owns except CRDs, then release it."""
        if CLEANUP_FINALIZER not in cluster_manager.finalizers:
            return None
        stores = self._stores_for(cluster_manager)
        options = ResolveOptions(
            hub_namespace=self.hub_namespace,
            agent_image=self.agent_image,
            sync_labels=self.sync_labels,
            work_driver_config={},
        )
        descriptors = resolve(cluster_manager, gates, options)
        deleted = ApplyReconciler(stores).delete_all(
            descriptors,
            keep=lambda descriptor: descriptor.kind is ResourceKind.CUSTOM_RESOURCE_DEFINITION,
        )
        self.cluster_managers.set_finalizers(
            cluster_manager.name,
            [f for f in cluster_manager.finalizers if f != CLEANUP_FINALIZER],
        )
        self._hub_stores.pop(cluster_manager.name, None)
        LOGGER.info(
            "Cleaned up ClusterManager %s (%d objects deleted)", cluster_manager.name, len(deleted)
        )
        return ReconcileResult(
            name=cluster_manager.name,
            related_resources=0,
            operations=len(deleted),
            deferred=0,
            status_written=False,
        )


def _resource_version(listing: Any) -> str | None:
    if isinstance(listing, dict):
        return (listing.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


def _items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _object_metadata(obj: Any) -> tuple[str | None, dict[str, str], str | None]:
    """Return (name, labels, resourceVersion) for a typed or plain-dict object."""
    if isinstance(obj, dict):
        metadata = obj.get("metadata") or {}
        return metadata.get("name"), metadata.get("labels") or {}, metadata.get("resourceVersion")
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None, {}, None
    return metadata.name, metadata.labels or {}, metadata.resource_version


class ClusterManagerOperator:
    """Feeds ClusterManager and workload events into a queue drained by workers.

    Three sources enqueue ClusterManager names: a list/watch of the
    ClusterManager resources, a list/watch of hub Deployments labelled with
    their owning ClusterManager, and a periodic full resync.  The queue keeps
    each name single-flight while up to ``workers`` distinct ClusterManagers
    are reconciled concurrently.
    """

    def __init__(
        self,
        controller: ClusterManagerController,
        cluster_managers: ClusterManagerClient,
        apps_api: AppsV1Api,
        *,
        workers: int = 2,
        resync_seconds: int = 60,
        request_timeout: float = 30,
        queue: ReconcileQueue | None = None,
    ) -> None:
        self.controller = controller
        self.cluster_managers = cluster_managers
        self.apps_api = apps_api
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.request_timeout = request_timeout
        self.queue = queue or ReconcileQueue()
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    def enqueue(self, name: str) -> None:
        self.queue.add(name)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt open watch streams."""
        self._external_stop.set()
        self.queue.shutdown()
        with self._watcher_lock:
            watchers = list(self._active_watchers)
        for active in watchers:
            active.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def process_next(self, timeout: float | None = 1.0) -> bool:
        """Reconcile the next queued ClusterManager; False when nothing was processed."""
        name = self.queue.get(timeout=timeout)
        if name is None:
            return False
        started = time.monotonic()
        try:
            self.controller.reconcile(name)
            self.queue.forget(name)
            METRICS.reconcile_total.labels(result="success").inc()
        except (ApplyError, HubAccessError, ApiException) as exc:
            delay = self.queue.retry(name)
            METRICS.reconcile_total.labels(result="error").inc()
            LOGGER.error(
                "Reconcile of ClusterManager %s failed (%s); retrying in %.1fs", name, exc, delay
            )
        except Exception:
            delay = self.queue.retry(name)
            METRICS.reconcile_total.labels(result="error").inc()
            LOGGER.exception(
                "Unexpected error reconciling ClusterManager %s; retrying in %.1fs", name, delay
            )
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(name)
        return True

    def _worker(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            self.process_next(timeout=1.0)

    def _resync(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            if stop.wait(timeout=self.resync_seconds) or self._external_stop.is_set():
                return
            try:
                for item in _items(self.cluster_managers.list()):
                    name, _, _ = _object_metadata(item)
                    if name:
                        self.enqueue(name)
            except Exception:
                LOGGER.exception("Periodic ClusterManager resync failed")
                METRICS.watch_errors_total.labels(resource="clustermanagers").inc()

    def _on_cluster_manager(self, event_type: str, obj: Any) -> None:
        name, _, _ = _object_metadata(obj)
        if name and event_type in {"ADDED", "MODIFIED"}:
            self.enqueue(name)

    def _on_deployment(self, event_type: str, obj: Any) -> None:
        _, labels, _ = _object_metadata(obj)
        owner = labels.get(HUB_LABEL_KEY)
        if owner:
            self.enqueue(owner)

    def list_and_watch(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any],
        on_event: Callable[[str, Any], None],
        stop: threading.Event,
        on_listed: Callable[[], None] | None = None,
    ) -> None:
        """List-then-watch ``resource`` until shutdown, feeding every object to ``on_event``.

        The initial list is retried with jittered exponential backoff.  A
        ``410 Gone`` re-lists and resumes; other errors back off (capped at
        30 s) and reconnect.  ``401`` / ``403`` mean RBAC is wrong: the loop
        logs a hint, clears readiness and returns.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = list_fn(**list_kwargs, _request_timeout=self.request_timeout)
                resource_version = _resource_version(listing)
                for item in _items(listing):
                    on_event("ADDED", item)
                if on_listed is not None:
                    on_listed()
                LOGGER.info(
                    "Starting %s watch from resourceVersion %s", resource, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    self.ready.clear()
                    return
                LOGGER.exception("Initial %s list failed", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            except Exception:
                LOGGER.exception("Unexpected error during initial %s list", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        streams = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if streams > 0:
                    METRICS.watch_reconnects_total.labels(resource=resource).inc()
                streams += 1
                for event in watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **list_kwargs,
                ):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    _, _, version = _object_metadata(obj)
                    if version:
                        resource_version = version
                    on_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("%s watch resource version expired, re-listing", resource)
                    try:
                        fresh = list_fn(**list_kwargs, _request_timeout=self.request_timeout)
                        resource_version = _resource_version(fresh)
                        for item in _items(fresh):
                            on_event("ADDED", item)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            LOGGER.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check operator RBAC and service account permissions.",
                                resource,
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        LOGGER.exception("Failed to re-list %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    except Exception:
                        LOGGER.exception("Unexpected error re-listing %s after 410", resource)
                        METRICS.watch_errors_total.labels(resource=resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=resource).inc()
                    self.ready.clear()
                    return

                LOGGER.exception("Kubernetes API %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected %s watch error", resource)
                METRICS.watch_errors_total.labels(resource=resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watches, resync and workers until shutdown, then drain the workers."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        threads = [
            threading.Thread(target=self._worker, args=(stop,), daemon=True, name=f"worker-{i}")
            for i in range(self.workers)
        ]
        threads.append(
            threading.Thread(
                target=self.list_and_watch,
                args=(
                    "deployments",
                    self.apps_api.list_deployment_for_all_namespaces,
                    {"label_selector": HUB_LABEL_KEY},
                    self._on_deployment,
                    stop,
                ),
                daemon=True,
                name="deployment-watch",
            )
        )
        threads.append(
            threading.Thread(target=self._resync, args=(stop,), daemon=True, name="resync")
        )
        for thread in threads:
            thread.start()

        self.list_and_watch(
            "clustermanagers",
            self.cluster_managers.list_function(),
            self.cluster_managers.watch_arguments(),
            self._on_cluster_manager,
            stop,
            on_listed=self.ready.set,
        )

        self.request_stop()
        for thread in threads:
            thread.join(timeout=45)
        self.ready.clear()
