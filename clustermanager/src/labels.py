from __future__ import annotations

from collections.abc import Mapping

APP_LABEL_KEY = "app"
HUB_LABEL_KEY = "createdByClusterManager"
LABEL_PREFIX = "open-cluster-management.io"

RESERVED_LABEL_KEYS = frozenset({APP_LABEL_KEY, HUB_LABEL_KEY})


def is_reserved_label(key: str) -> bool:
    """Return True for keys the operator owns: identity labels and its own prefix."""
    return key in RESERVED_LABEL_KEYS or key.startswith(LABEL_PREFIX)


def user_labels(labels: Mapping[str, str] | None) -> dict[str, str]:
    """Drop reserved keys from labels set by the ClusterManager's owner."""
    return {k: v for k, v in (labels or {}).items() if not is_reserved_label(k)}


def reserved_labels(cluster_manager_name: str, app: str) -> dict[str, str]:
    return {APP_LABEL_KEY: app, HUB_LABEL_KEY: cluster_manager_name}


def merge(
    labels: Mapping[str, str] | None, reserved: Mapping[str, str]
) -> dict[str, str]:
    """Merge user labels with operator-computed reserved labels.

    Reserved values always win, whatever the user set for the same keys.
    """
    return {**user_labels(labels), **reserved}


def labels_to_string(labels: Mapping[str, str]) -> str:
    """Serialize labels as sorted ``k=v`` pairs joined by commas."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def labels_arg(labels: Mapping[str, str] | None) -> str | None:
    """Return the ``--labels`` argument for the user labels, or None when empty."""
    filtered = user_labels(labels)
    if not filtered:
        return None
    return f"--labels={labels_to_string(filtered)}"
