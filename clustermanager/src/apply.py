from __future__ import annotations

import enum
import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any

from kubernetes.client import ApiException

from clustermanager.src.kube import ObjectStore
from clustermanager.src.metrics import METRICS
from clustermanager.src.model import (
    ResourceDescriptor,
    ResourceIdentity,
    ResourceKind,
    TargetCluster,
)

LOGGER = logging.getLogger(__name__)

SPEC_HASH_ANNOTATION = "operator.open-cluster-management.io/spec-hash"

ReadinessGate = Callable[[str], bool]


class ApplyAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


class ApplyError(RuntimeError):
    """The API server rejected an operation on one managed object."""

    def __init__(
        self, identity: ResourceIdentity, action: ApplyAction, cause: ApiException
    ) -> None:
        self.identity = identity
        self.action = action
        self.cause = cause
        super().__init__(f"failed to {action.value} {identity}: {cause.status} {cause.reason}")


@dataclass(frozen=True)
class GenerationStatus:
    """Generation of a workload as last written by the operator."""

    group: str
    version: str
    resource: str
    namespace: str
    name: str
    last_generation: int

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.group, self.resource, self.namespace, self.name)

    def as_status(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "version": self.version,
            "resource": self.resource,
            "namespace": self.namespace,
            "name": self.name,
            "lastGeneration": self.last_generation,
        }

    @classmethod
    def from_status(cls, raw: Mapping[str, Any]) -> GenerationStatus:
        return cls(
            group=raw.get("group", ""),
            version=raw.get("version", ""),
            resource=raw.get("resource", ""),
            namespace=raw.get("namespace", ""),
            name=raw.get("name", ""),
            last_generation=int(raw.get("lastGeneration") or 0),
        )

    @classmethod
    def for_object(cls, identity: ResourceIdentity, generation: int) -> GenerationStatus:
        return cls(
            group=identity.kind.group,
            version=identity.kind.version,
            resource=identity.kind.resource,
            namespace=identity.namespace,
            name=identity.name,
            last_generation=generation,
        )


@dataclass
class ApplyResult:
    related_resources: list[dict[str, str]] = field(default_factory=list)
    generations: list[GenerationStatus] = field(default_factory=list)
    created: list[ResourceIdentity] = field(default_factory=list)
    updated: list[ResourceIdentity] = field(default_factory=list)
    deleted: list[ResourceIdentity] = field(default_factory=list)
    deferred: list[ResourceIdentity] = field(default_factory=list)

    @property
    def operations(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)


def content_hash(content: Mapping[str, Any]) -> str:
    """Return a SHA-256 hex digest of rendered object content.

    Hashing the rendered content rather than diffing against the live
    object keeps server-populated defaults from looking like drift.
    """
    stable_payload = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def _annotations(obj: Mapping[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def _generation(obj: Mapping[str, Any]) -> int:
    return int((obj.get("metadata") or {}).get("generation") or 0)


def render_with_hash(descriptor: ResourceDescriptor) -> dict[str, Any]:
    body = descriptor.render()
    digest = content_hash(body)
    metadata = body.setdefault("metadata", {})
    metadata["annotations"] = {**(metadata.get("annotations") or {}), SPEC_HASH_ANNOTATION: digest}
    return body


def merge_for_update(live: Mapping[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``desired`` on ``live`` keeping fields other actors own.

    Labels and annotations set by others survive; Service cluster IPs and
    ServiceAccount token references are immutable or server-assigned and are
    carried over.
    """
    live_metadata = live.get("metadata") or {}
    metadata = desired["metadata"]
    if live_metadata.get("resourceVersion"):
        metadata["resourceVersion"] = live_metadata["resourceVersion"]
    metadata["labels"] = {**(live_metadata.get("labels") or {}), **(metadata.get("labels") or {})}
    metadata["annotations"] = {
        **(live_metadata.get("annotations") or {}),
        **(metadata.get("annotations") or {}),
    }

    kind = desired.get("kind")
    if kind == ResourceKind.SERVICE.kind:
        live_spec = live.get("spec") or {}
        for key in ("clusterIP", "clusterIPs"):
            if live_spec.get(key):
                desired.setdefault("spec", {})[key] = live_spec[key]
    elif kind == ResourceKind.SERVICE_ACCOUNT.kind:
        for key in ("secrets", "imagePullSecrets"):
            if live.get(key):
                desired[key] = live[key]
    return desired


class ApplyReconciler:
    """Converge managed objects toward a resolved descriptor list.

    ``stores`` maps each target cluster to its object store; in Default mode
    both entries are the same store.
    """

    def __init__(self, stores: Mapping[TargetCluster, ObjectStore]) -> None:
        self.stores = stores

    def _store(self, identity: ResourceIdentity) -> ObjectStore:
        return self.stores[identity.cluster]

    def _call(
        self, identity: ResourceIdentity, action: ApplyAction, fn: Callable[[], Any]
    ) -> Any:
        try:
            result = fn()
        except ApiException as exc:
            raise ApplyError(identity, action, exc) from exc
        if action is not ApplyAction.READ:
            METRICS.apply_operations_total.labels(
                kind=identity.kind.kind, action=action.value
            ).inc()
        return result

    def reconcile(
        self,
        descriptors: Sequence[ResourceDescriptor],
        previous_generations: Iterable[GenerationStatus] = (),
        gate: ReadinessGate | None = None,
    ) -> ApplyResult:
        """Apply one pass.  Raises :class:`ApplyError` on the first API failure.

        Required objects are created or updated in order; unrequired ones that
        still exist are deleted in reverse order.  A descriptor with a
        ``readiness_gate`` is only created once ``gate`` confirms that
        workload; an existing one is kept up to date regardless.
        """
        recorded = {status.key: status.last_generation for status in previous_generations}
        result = ApplyResult()

        for descriptor in descriptors:
            if not descriptor.required:
                continue
            identity = descriptor.identity
            store = self._store(identity)
            live = self._call(identity, ApplyAction.READ, lambda: store.get(identity))
            desired = render_with_hash(descriptor)

            if live is None:
                if descriptor.readiness_gate is not None and not (
                    gate is not None and gate(descriptor.readiness_gate)
                ):
                    LOGGER.info(
                        "Deferring %s until %s is ready", identity, descriptor.readiness_gate
                    )
                    result.deferred.append(identity)
                    continue
                live = self._call(
                    identity, ApplyAction.CREATE, lambda: store.create(identity, desired)
                )
                LOGGER.info("Created %s", identity)
                result.created.append(identity)
            elif not descriptor.create_only and self._drifted(descriptor, live, desired, recorded):
                body = merge_for_update(live, desired)
                live = self._call(
                    identity, ApplyAction.UPDATE, lambda: store.replace(identity, body)
                )
                LOGGER.info("Updated %s", identity)
                result.updated.append(identity)

            result.related_resources.append(identity.as_related_resource())
            if identity.kind.is_workload:
                result.generations.append(
                    GenerationStatus.for_object(identity, _generation(live))
                )

        for descriptor in reversed(descriptors):
            if descriptor.required:
                continue
            identity = descriptor.identity
            store = self._store(identity)
            live = self._call(identity, ApplyAction.READ, lambda: store.get(identity))
            if live is None:
                continue
            self._call(identity, ApplyAction.DELETE, lambda: store.delete(identity))
            LOGGER.info("Deleted %s (owner %s no longer enabled)", identity, descriptor.owner)
            result.deleted.append(identity)

        return result

    @staticmethod
    def _drifted(
        descriptor: ResourceDescriptor,
        live: Mapping[str, Any],
        desired: Mapping[str, Any],
        recorded: Mapping[tuple[str, str, str, str], int],
    ) -> bool:
        desired_hash = _annotations(desired)[SPEC_HASH_ANNOTATION]
        if _annotations(live).get(SPEC_HASH_ANNOTATION) != desired_hash:
            return True
        if not descriptor.kind.is_workload:
            return False
        identity = descriptor.identity
        key = (identity.kind.group, identity.kind.resource, identity.namespace, identity.name)
        last = recorded.get(key)
        # A generation we did not write means someone else edited the spec.
        return last is not None and _generation(live) != last

    def delete_all(
        self,
        descriptors: Sequence[ResourceDescriptor],
        keep: Callable[[ResourceDescriptor], bool],
    ) -> list[ResourceIdentity]:
        """Delete every object in ``descriptors`` except those ``keep`` selects."""
        deleted = []
        for descriptor in reversed(descriptors):
            if keep(descriptor):
                continue
            identity = descriptor.identity
            store = self._store(identity)
            live = self._call(identity, ApplyAction.READ, lambda: store.get(identity))
            if live is None:
                continue
            self._call(identity, ApplyAction.DELETE, lambda: store.delete(identity))
            LOGGER.info("Deleted %s during ClusterManager cleanup", identity)
            deleted.append(identity)
        return deleted
