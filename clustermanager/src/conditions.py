from __future__ import annotations

import enum
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from clustermanager.src.featuregates import HubFeatureGates
from clustermanager.src.resolver import (
    ADDON_MANAGER_CONTROLLER,
    PLACEMENT_CONTROLLER,
    REGISTRATION_CONTROLLER,
    REGISTRATION_WEBHOOK,
    WORK_CONTROLLER,
    WORK_WEBHOOK,
    Component,
)

LOGGER = logging.getLogger(__name__)

APPLIED = "Applied"
PROGRESSING = "Progressing"
VALID_FEATURE_GATES = "ValidFeatureGates"
REGISTRATION_DRIVERS_VALID = "RegistrationDriversValid"
SECRET_SYNCED = "SecretSynced"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class SubsystemState(enum.IntEnum):
    """Rollout state of a subsystem, ordered from worst to best."""

    UNAVAILABLE = 0
    ROLLOUT_IN_PROGRESS = 1
    FUNCTIONAL = 2


@dataclass(frozen=True)
class WorkloadObservation:
    """Rollout status of one Deployment as read from the API."""

    name: str
    namespace: str = ""
    replicas: int = 0
    ready_replicas: int = 0
    generation: int = 0
    observed_generation: int = 0
    found: bool = True
    readable: bool = True

    @classmethod
    def from_deployment(
        cls, name: str, namespace: str, obj: Mapping[str, Any] | None
    ) -> WorkloadObservation:
        if obj is None:
            return cls(name=name, namespace=namespace, found=False)
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        replicas = spec.get("replicas")
        return cls(
            name=name,
            namespace=namespace,
            replicas=1 if replicas is None else int(replicas),
            ready_replicas=int(status.get("readyReplicas") or 0),
            generation=int(metadata.get("generation") or 0),
            observed_generation=int(status.get("observedGeneration") or 0),
        )

    @classmethod
    def unreadable(cls, name: str, namespace: str) -> WorkloadObservation:
        return cls(name=name, namespace=namespace, readable=False)

    @property
    def generation_observed(self) -> bool:
        return self.observed_generation == self.generation

    @property
    def serving(self) -> bool:
        """At least one ready replica running the current generation."""
        return (
            self.found
            and self.readable
            and self.ready_replicas >= 1
            and self.generation_observed
        )

    @property
    def unavailable_replicas(self) -> int:
        return max(self.replicas - self.ready_replicas, 0)

    @property
    def state(self) -> SubsystemState:
        if not self.found or not self.readable or self.ready_replicas < 1:
            return SubsystemState.UNAVAILABLE
        if not self.generation_observed or self.ready_replicas < self.replicas:
            return SubsystemState.ROLLOUT_IN_PROGRESS
        return SubsystemState.FUNCTIONAL


def transition(
    current: SubsystemState | None, observations: Sequence[WorkloadObservation]
) -> SubsystemState:
    """Next state of a subsystem given fresh observations of its workloads.

    An unreadable workload never makes a subsystem look worse than before: a
    functional subsystem drops to rolling, an unavailable one stays put.
    """
    if not observations:
        return SubsystemState.UNAVAILABLE
    readable = [obs for obs in observations if obs.readable]
    observed = min((obs.state for obs in readable), default=SubsystemState.FUNCTIONAL)
    if len(readable) == len(observations):
        return observed
    fallback = (
        SubsystemState.UNAVAILABLE
        if current in (None, SubsystemState.UNAVAILABLE)
        else SubsystemState.ROLLOUT_IN_PROGRESS
    )
    return min(observed, fallback)


@dataclass(frozen=True)
class Subsystem:
    name: str
    condition_type: str
    unavailable_reason: str
    functional_reason: str
    components: tuple[Component, ...]

    def enabled(self, gates: HubFeatureGates) -> bool:
        return any(component.enabled(gates) for component in self.components)

    def deployment_names(self, cluster_manager: str, gates: HubFeatureGates) -> list[str]:
        return [
            component.deployment_name(cluster_manager)
            for component in self.components
            if component.enabled(gates)
        ]


SUBSYSTEMS: tuple[Subsystem, ...] = (
    Subsystem(
        "registration",
        "HubRegistrationDegraded",
        "UnavailableRegistrationPod",
        "RegistrationFunctional",
        (REGISTRATION_CONTROLLER,),
    ),
    Subsystem(
        "placement",
        "HubPlacementDegraded",
        "UnavailablePlacementPod",
        "PlacementFunctional",
        (PLACEMENT_CONTROLLER,),
    ),
    Subsystem(
        "work",
        "HubWorkDegraded",
        "UnavailableWorkPod",
        "WorkFunctional",
        (WORK_CONTROLLER,),
    ),
    Subsystem(
        "addon-manager",
        "HubAddOnManagerDegraded",
        "UnavailableAddOnManagerPod",
        "AddOnManagerFunctional",
        (ADDON_MANAGER_CONTROLLER,),
    ),
    Subsystem(
        "webhook",
        "HubWebhookDegraded",
        "UnavailableWebhookPod",
        "WebhookFunctional",
        (REGISTRATION_WEBHOOK, WORK_WEBHOOK),
    ),
)


class WorkDriverSecretState(str, enum.Enum):
    SYNCED = "WorkDriverConfigSecretSynced"
    MISSING = "WorkDriverConfigSecretMissing"
    INVALID = "WorkDriverConfigInvalid"


@dataclass(frozen=True)
class ApplyOutcome:
    deferred: tuple[str, ...] = ()
    error: str | None = None


def find_condition(
    conditions: Sequence[Mapping[str, Any]], condition_type: str
) -> Mapping[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    conditions: Sequence[Mapping[str, Any]],
    condition_type: str,
    status: bool,
    reason: str,
    message: str,
    *,
    generation: int,
    now: str,
) -> list[dict[str, Any]]:
    """Return ``conditions`` with one condition upserted.

    ``lastTransitionTime`` only moves when the status flips.
    """
    status_text = "True" if status else "False"
    existing = find_condition(conditions, condition_type)
    transition_time = now
    if existing is not None and existing.get("status") == status_text:
        transition_time = existing.get("lastTransitionTime") or now
    updated = {
        "type": condition_type,
        "status": status_text,
        "reason": reason,
        "message": message,
        "observedGeneration": generation,
        "lastTransitionTime": transition_time,
    }
    result = [dict(c) for c in conditions if c.get("type") != condition_type]
    if existing is None:
        result.append(updated)
        return result
    # Keep the original position so status diffs stay readable.
    index = [c.get("type") for c in conditions].index(condition_type)
    result.insert(index, updated)
    return result


def remove_condition(
    conditions: Sequence[Mapping[str, Any]], condition_type: str
) -> list[dict[str, Any]]:
    return [dict(c) for c in conditions if c.get("type") != condition_type]


def _previous_state(
    conditions: Sequence[Mapping[str, Any]], subsystem: Subsystem
) -> SubsystemState | None:
    degraded = find_condition(conditions, subsystem.condition_type)
    if degraded is None:
        return None
    if degraded.get("status") == "True":
        return SubsystemState.UNAVAILABLE
    return SubsystemState.FUNCTIONAL


def _unavailable_message(observations: Sequence[WorkloadObservation]) -> str:
    parts = []
    for obs in observations:
        if obs.state is not SubsystemState.UNAVAILABLE:
            continue
        if not obs.readable:
            parts.append(f"status of {obs.namespace}/{obs.name} could not be read")
        elif not obs.found:
            parts.append(f"{obs.namespace}/{obs.name} does not exist")
        else:
            parts.append(
                f"{obs.unavailable_replicas} of {obs.replicas} requested instances are "
                f"unavailable in {obs.namespace}/{obs.name}"
            )
    return "; ".join(parts)


def aggregate(
    status_conditions: Sequence[Mapping[str, Any]],
    *,
    cluster_manager: str,
    generation: int,
    gates: HubFeatureGates,
    observations: Mapping[str, WorkloadObservation],
    outcome: ApplyOutcome,
    invalid_drivers: Sequence[str] = (),
    secret_state: WorkDriverSecretState | None = None,
    now: str | None = None,
) -> list[dict[str, Any]]:
    """Compute the full condition list for one ClusterManager.

    Pure apart from reading the clock when ``now`` is not given.
    """
    now = now or utc_now_rfc3339()
    conditions = [dict(c) for c in status_conditions]

    def put(condition_type: str, status: bool, reason: str, message: str) -> None:
        nonlocal conditions
        conditions = set_condition(
            conditions, condition_type, status, reason, message, generation=generation, now=now
        )

    if outcome.error is not None:
        put(APPLIED, False, "ClusterManagerApplyFailed", outcome.error)
    elif outcome.deferred:
        put(
            APPLIED,
            False,
            "ClusterManagerApplyPending",
            "Waiting for workloads to become ready before registering "
            + ", ".join(outcome.deferred),
        )
    else:
        put(APPLIED, True, "ClusterManagerApplied", "Components of cluster manager are applied")

    rolling: list[str] = []
    for subsystem in SUBSYSTEMS:
        if not subsystem.enabled(gates):
            conditions = remove_condition(conditions, subsystem.condition_type)
            continue
        names = subsystem.deployment_names(cluster_manager, gates)
        subsystem_obs = [observations[name] for name in names if name in observations]
        state = transition(_previous_state(status_conditions, subsystem), subsystem_obs)
        if state is SubsystemState.UNAVAILABLE:
            put(
                subsystem.condition_type,
                True,
                subsystem.unavailable_reason,
                _unavailable_message(subsystem_obs) or "No workload status observed",
            )
        else:
            put(
                subsystem.condition_type,
                False,
                subsystem.functional_reason,
                f"Components of {subsystem.name} are functional",
            )
        if state is not SubsystemState.FUNCTIONAL:
            rolling.extend(
                obs.name for obs in subsystem_obs if obs.state is not SubsystemState.FUNCTIONAL
            )
            if not subsystem_obs:
                rolling.extend(names)

    if rolling:
        put(
            PROGRESSING,
            True,
            "ClusterManagerDeploymentRolling",
            "Deployments are still rolling out: " + ", ".join(sorted(rolling)),
        )
    else:
        put(
            PROGRESSING,
            False,
            "ClusterManagerUpToDate",
            "Components of cluster manager are up to date",
        )

    invalid_gates = gates.invalid
    if invalid_gates:
        put(
            VALID_FEATURE_GATES,
            False,
            "InvalidFeatureGatesExisting",
            f"There are some invalid feature gates: {', '.join(invalid_gates)}",
        )
    else:
        put(VALID_FEATURE_GATES, True, "FeatureGatesAllValid", "Feature gates are all valid")

    if invalid_drivers:
        put(
            REGISTRATION_DRIVERS_VALID,
            False,
            "InvalidRegistrationDrivers",
            "; ".join(invalid_drivers),
        )
    else:
        put(
            REGISTRATION_DRIVERS_VALID,
            True,
            "RegistrationDriversAllValid",
            "Registration drivers are all valid",
        )

    if secret_state is None:
        conditions = remove_condition(conditions, SECRET_SYNCED)
    elif secret_state is WorkDriverSecretState.SYNCED:
        put(SECRET_SYNCED, True, secret_state.value, "Work driver config secret is synced")
    elif secret_state is WorkDriverSecretState.MISSING:
        put(SECRET_SYNCED, False, secret_state.value, "Work driver config secret is not found")
    else:
        put(
            SECRET_SYNCED,
            False,
            secret_state.value,
            "Work driver config secret does not hold a YAML mapping under config.yaml",
        )

    return conditions
