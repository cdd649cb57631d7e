from __future__ import annotations

from datetime import timedelta

import pytest

from clustermanager.src.settings import ConfigError, env_bool, env_int, load_settings


def test_defaults() -> None:
    settings = load_settings({})

    assert settings.operator_namespace == "open-cluster-management"
    assert settings.hub_namespace == "open-cluster-management-hub"
    assert settings.sync_labels is True
    assert settings.reconcile_workers == 2
    assert settings.rotation.signing_cert_validity == timedelta(days=365)
    assert settings.rotation.target_cert_validity == timedelta(days=30)
    assert settings.health_port == 8080
    assert settings.log_level == "INFO"


def test_overrides() -> None:
    settings = load_settings(
        {
            "HUB_NAMESPACE": "hub",
            "AGENT_IMAGE": " quay.io/ocm/agent:v1 ",
            "ENABLE_SYNC_LABELS": "false",
            "TARGET_CERT_VALIDITY_SECONDS": "60",
            "SIGNING_CERT_VALIDITY_SECONDS": "600",
            "log_level": "ignored",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.hub_namespace == "hub"
    assert settings.agent_image == "quay.io/ocm/agent:v1"
    assert settings.sync_labels is False
    assert settings.rotation.target_cert_validity == timedelta(seconds=60)
    assert settings.log_level == "DEBUG"


def test_target_validity_must_be_shorter_than_signer() -> None:
    with pytest.raises(ConfigError, match="TARGET_CERT_VALIDITY_SECONDS"):
        load_settings(
            {"SIGNING_CERT_VALIDITY_SECONDS": "60", "TARGET_CERT_VALIDITY_SECONDS": "60"}
        )


def test_blank_namespace_is_rejected() -> None:
    with pytest.raises(ConfigError, match="HUB_NAMESPACE"):
        load_settings({"HUB_NAMESPACE": "  "})


def test_env_int_rejects_non_integer() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        env_int("WORKERS", 1, env={"WORKERS": "many"})


def test_env_int_enforces_bounds() -> None:
    with pytest.raises(ConfigError, match=">= 1"):
        env_int("WORKERS", 1, minimum=1, env={"WORKERS": "0"})
    with pytest.raises(ConfigError, match="<= 4"):
        env_int("WORKERS", 1, maximum=4, env={"WORKERS": "5"})


@pytest.mark.parametrize(("raw", "expected"), [("1", True), ("Yes", True), ("off", False)])
def test_env_bool(raw: str, expected: bool) -> None:
    assert env_bool("FLAG", not expected, env={"FLAG": raw}) is expected
