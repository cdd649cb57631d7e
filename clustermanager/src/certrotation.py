from __future__ import annotations

import base64
import ipaddress
import logging
import random
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from kubernetes.client import ApiException

from clustermanager.src.kube import ClusterManagerClient, ObjectStore
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
    REGISTRATION_WEBHOOK,
    SIGNER_SECRET,
    WORK_WEBHOOK,
    workload_namespace,
)

LOGGER = logging.getLogger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"
CA_BUNDLE_KEY = "ca-bundle.crt"
_KEY_SIZE = 2048
_CLOCK_SKEW = timedelta(seconds=1)


class RotationError(RuntimeError):
    """A rotation tick could not complete; existing material is left in place."""


@dataclass(frozen=True)
class RotationConfig:
    """Validity windows and tick interval for one rotation controller.

    A certificate is renewed once ``refresh_fraction`` of its lifetime has
    elapsed.
    """

    signing_cert_validity: timedelta = timedelta(days=365)
    target_cert_validity: timedelta = timedelta(days=30)
    resync_interval: timedelta = timedelta(minutes=10)
    refresh_fraction: float = 0.8

    def __post_init__(self) -> None:
        if self.target_cert_validity >= self.signing_cert_validity:
            raise ValueError("target certificate validity must be shorter than signer validity")
        if not 0 < self.refresh_fraction < 1:
            raise ValueError("refresh_fraction must be between 0 and 1")
        if self.resync_interval <= timedelta(0):
            raise ValueError("resync_interval must be positive")


@dataclass(frozen=True)
class KeyPair:
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey

    @property
    def cert_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def key_pem(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class ServingTarget:
    """A webhook endpoint whose serving certificate lives in ``secret_name``."""

    secret_name: str
    hostnames: tuple[str, ...]


@dataclass
class RotationReport:
    signer_rotated: bool = False
    bundle_published: bool = False
    reissued: list[str] = field(default_factory=list)


def _common_name(certificate: x509.Certificate) -> str:
    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ""


def _fingerprint(certificate: x509.Certificate) -> bytes:
    return certificate.fingerprint(hashes.SHA256())


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=_KEY_SIZE)


def new_signer(namespace: str, validity: timedelta, now: datetime) -> KeyPair:
    """Create a self-signed CA named after the namespace and creation time."""
    key = _new_key()
    name = x509.Name(
        [
            x509.NameAttribute(
                NameOID.COMMON_NAME,
                f"{namespace}_cluster-manager-webhook@{int(now.timestamp())}",
            )
        ]
    )
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - _CLOCK_SKEW)
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return KeyPair(certificate=certificate, private_key=key)


def _subject_alternative_names(hostnames: Sequence[str]) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = []
    for host in hostnames:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    return names


def new_serving_cert(
    signer: KeyPair, hostnames: Sequence[str], validity: timedelta, now: datetime
) -> KeyPair:
    """Issue a server certificate for ``hostnames`` signed by ``signer``.

    The leaf never outlives its issuer.
    """
    if not hostnames:
        raise ValueError("serving certificate needs at least one hostname")
    key = _new_key()
    not_after = min(now + validity, signer.certificate.not_valid_after_utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])]))
        .issuer_name(signer.certificate.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - _CLOCK_SKEW)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(
            x509.SubjectAlternativeName(_subject_alternative_names(hostnames)), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                signer.private_key.public_key()
            ),
            critical=False,
        )
        .sign(signer.private_key, hashes.SHA256())
    )
    return KeyPair(certificate=certificate, private_key=key)


def needs_refresh(certificate: x509.Certificate, now: datetime, fraction: float) -> bool:
    """True when ``certificate`` is not yet valid, expired, or past its refresh point."""
    not_before = certificate.not_valid_before_utc
    not_after = certificate.not_valid_after_utc
    if now < not_before or now >= not_after:
        return True
    return now >= not_before + (not_after - not_before) * fraction


def is_issued_by(certificate: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        certificate.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def hostnames_of(certificate: x509.Certificate) -> tuple[str, ...]:
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return ()
    names = [str(name) for name in san.get_values_for_type(x509.DNSName)]
    names += [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    return tuple(sorted(names))


def parse_bundle(pem: str | bytes | None) -> list[x509.Certificate]:
    if not pem:
        return []
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    return x509.load_pem_x509_certificates(data)


def encode_bundle(certificates: Sequence[x509.Certificate]) -> str:
    return "".join(
        cert.public_bytes(serialization.Encoding.PEM).decode("utf-8") for cert in certificates
    )


def _decode(data: dict[str, Any], key: str) -> bytes:
    raw = data.get(key)
    return base64.b64decode(raw) if raw else b""


def load_key_pair(secret: dict[str, Any] | None) -> KeyPair | None:
    """Parse a TLS secret into a key pair; None when empty or unparsable."""
    if secret is None:
        return None
    data = secret.get("data") or {}
    cert_pem = _decode(data, TLS_CERT_KEY)
    key_pem = _decode(data, TLS_KEY_KEY)
    if not cert_pem or not key_pem:
        return None
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except ValueError:
        LOGGER.warning(
            "Discarding unparsable key pair in secret %s",
            (secret.get("metadata") or {}).get("name"),
        )
        return None
    if not isinstance(private_key, rsa.RSAPrivateKey):
        return None
    return KeyPair(certificate=certificate, private_key=private_key)


class CertRotationController:
    """Owns the webhook signer, the serving certificates and the CA bundle of one namespace.

    Each :meth:`tick` finishes signer rotation and bundle publication before
    any serving certificate is reissued against the new signer, and prunes a
    retired CA only after no serving certificate references it any more.
    """

    def __init__(
        self,
        store: ObjectStore,
        namespace: str,
        config: RotationConfig,
        targets: Sequence[ServingTarget],
        *,
        cluster: TargetCluster = TargetCluster.HUB,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
        on_bundle_change: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.config = config
        self.targets = list(targets)
        self.cluster = cluster
        self.now_fn = now_fn
        self.on_bundle_change = on_bundle_change
        self._lock = threading.Lock()

    def _identity(self, kind: ResourceKind, name: str) -> ResourceIdentity:
        return ResourceIdentity(
            kind=kind, name=name, namespace=self.namespace, cluster=self.cluster
        )

    def _write_key_pair(self, name: str, pair: KeyPair) -> None:
        """Store certificate and key in one write so readers never see a mismatched pair."""
        identity = self._identity(ResourceKind.SECRET, name)
        data = {
            TLS_CERT_KEY: base64.b64encode(pair.cert_pem).decode("ascii"),
            TLS_KEY_KEY: base64.b64encode(pair.key_pem).decode("ascii"),
        }
        live = self.store.get(identity)
        if live is None:
            self.store.create(
                identity,
                {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "metadata": {"name": name, "namespace": self.namespace},
                    "type": "kubernetes.io/tls",
                    "data": data,
                },
            )
            return
        live["data"] = data
        self.store.replace(identity, live)

    def _read_bundle(self) -> tuple[dict[str, Any] | None, list[x509.Certificate]]:
        live = self.store.get(self._identity(ResourceKind.CONFIG_MAP, CA_BUNDLE_CONFIGMAP))
        if live is None:
            return None, []
        try:
            return live, parse_bundle((live.get("data") or {}).get(CA_BUNDLE_KEY))
        except ValueError:
            LOGGER.warning(
                "CA bundle in %s/%s is unparsable; rebuilding",
                self.namespace,
                CA_BUNDLE_CONFIGMAP,
            )
            return live, []

    def _publish_bundle(
        self,
        live: dict[str, Any] | None,
        current: Sequence[x509.Certificate],
        desired: Sequence[x509.Certificate],
    ) -> bool:
        if sorted(map(_fingerprint, current)) == sorted(map(_fingerprint, desired)):
            return False
        identity = self._identity(ResourceKind.CONFIG_MAP, CA_BUNDLE_CONFIGMAP)
        data = {CA_BUNDLE_KEY: encode_bundle(desired)}
        if live is None:
            self.store.create(
                identity,
                {
                    "apiVersion": "v1",
                    "kind": "ConfigMap",
                    "metadata": {"name": CA_BUNDLE_CONFIGMAP, "namespace": self.namespace},
                    "data": data,
                },
            )
        else:
            live["data"] = {**(live.get("data") or {}), **data}
            self.store.replace(identity, live)
        LOGGER.info(
            "Published CA bundle %s/%s with %d certificate(s)",
            self.namespace,
            CA_BUNDLE_CONFIGMAP,
            len(desired),
        )
        return True

    def _ensure_signer(self, now: datetime, report: RotationReport) -> KeyPair:
        signer = load_key_pair(self.store.get(self._identity(ResourceKind.SECRET, SIGNER_SECRET)))
        if signer is not None and not needs_refresh(
            signer.certificate, now, self.config.refresh_fraction
        ):
            return signer
        signer = new_signer(self.namespace, self.config.signing_cert_validity, now)
        self._write_key_pair(SIGNER_SECRET, signer)
        report.signer_rotated = True
        METRICS.cert_rotations_total.labels(kind="signer").inc()
        LOGGER.info("Issued new webhook signer %s", _common_name(signer.certificate))
        return signer

    def _ensure_serving(
        self,
        target: ServingTarget,
        signer: KeyPair,
        now: datetime,
        report: RotationReport,
        *,
        tolerated: Sequence[x509.Certificate] = (),
    ) -> KeyPair:
        identity = self._identity(ResourceKind.SECRET, target.secret_name)
        current = load_key_pair(self.store.get(identity))
        reason = None
        if current is None:
            reason = "missing"
        elif needs_refresh(current.certificate, now, self.config.refresh_fraction):
            reason = "due for refresh"
        elif not is_issued_by(current.certificate, signer.certificate) and not any(
            is_issued_by(current.certificate, ca) for ca in tolerated
        ):
            reason = "issued by a retired signer"
        elif hostnames_of(current.certificate) != tuple(sorted(target.hostnames)):
            reason = "hostnames changed"
        if reason is None:
            return current

        issued = new_serving_cert(signer, target.hostnames, self.config.target_cert_validity, now)
        self._write_key_pair(target.secret_name, issued)
        report.reissued.append(target.secret_name)
        METRICS.cert_rotations_total.labels(kind="serving").inc()
        LOGGER.info(
            "Issued serving certificate %s/%s (%s)", self.namespace, target.secret_name, reason
        )
        return issued

    def tick(self) -> RotationReport:
        """Run one rotation pass.  Raises :class:`RotationError` if it cannot finish."""
        with self._lock:
            try:
                return self._tick()
            except Exception as exc:
                METRICS.cert_rotation_errors_total.inc()
                raise RotationError(
                    f"certificate rotation in namespace {self.namespace} failed: {exc}"
                ) from exc

    def _tick(self) -> RotationReport:
        now = self.now_fn()
        report = RotationReport()
        signer = self._ensure_signer(now, report)

        live_bundle, bundle = self._read_bundle()
        signer_fp = _fingerprint(signer.certificate)
        expanded = [signer.certificate] + [
            cert
            for cert in bundle
            if _fingerprint(cert) != signer_fp and cert.not_valid_after_utc > now
        ]
        if self._publish_bundle(live_bundle, bundle, expanded):
            report.bundle_published = True
            live_bundle, bundle = self._read_bundle()

        # Certificates from a still-valid older signer are reissued on the tick
        # after the bundle carrying the new signer went out.
        tolerated = expanded[1:] if report.bundle_published else []
        serving = [
            self._ensure_serving(target, signer, now, report, tolerated=tolerated)
            for target in self.targets
        ]

        # Retire CAs once no serving certificate chains to them.
        pruned = [
            cert
            for cert in expanded
            if _fingerprint(cert) == signer_fp
            or any(is_issued_by(pair.certificate, cert) for pair in serving)
        ]
        if self._publish_bundle(live_bundle, bundle, pruned):
            report.bundle_published = True

        if report.bundle_published and self.on_bundle_change is not None:
            self.on_bundle_change()
        return report


def serving_targets(cluster_manager: ClusterManager, namespace: str) -> list[ServingTarget]:
    """Serving certificates needed by the webhooks of ``cluster_manager``."""
    targets = []
    for component, hosted in (
        (REGISTRATION_WEBHOOK, cluster_manager.registration_webhook),
        (WORK_WEBHOOK, cluster_manager.work_webhook),
    ):
        if cluster_manager.mode is InstallMode.HOSTED:
            if hosted is None:
                continue
            hostnames: tuple[str, ...] = (hosted.address,)
        else:
            hostnames = (f"{component.service}.{namespace}.svc",)
        targets.append(
            ServingTarget(secret_name=str(component.serving_secret), hostnames=hostnames)
        )
    return targets


class CertRotationLoop:
    """Periodically runs a rotation controller for every ClusterManager.

    Certificate material always lives on the cluster the operator runs on:
    the hub in Default mode, the management cluster in Hosted mode.
    """

    def __init__(
        self,
        store: ObjectStore,
        cluster_managers: ClusterManagerClient,
        config: RotationConfig,
        hub_namespace: str,
        *,
        on_bundle_change: Callable[[str], None] | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.cluster_managers = cluster_managers
        self.config = config
        self.hub_namespace = hub_namespace
        self.on_bundle_change = on_bundle_change
        self.now_fn = now_fn
        self._controllers: dict[tuple[str, str], CertRotationController] = {}

    def controller_for(self, cluster_manager: ClusterManager) -> CertRotationController:
        namespace = workload_namespace(cluster_manager, self.hub_namespace)
        key = (cluster_manager.name, namespace)
        controller = self._controllers.get(key)
        if controller is None:
            name = cluster_manager.name
            controller = CertRotationController(
                store=self.store,
                namespace=namespace,
                config=self.config,
                targets=serving_targets(cluster_manager, namespace),
                cluster=TargetCluster.MANAGEMENT,
                now_fn=self.now_fn,
                on_bundle_change=(
                    (lambda: self.on_bundle_change(name)) if self.on_bundle_change else None
                ),
            )
            self._controllers[key] = controller
        else:
            controller.targets = serving_targets(cluster_manager, namespace)
        return controller

    def run_once(self) -> None:
        listing = self.cluster_managers.list()
        active: set[tuple[str, str]] = set()
        for item in listing.get("items") or []:
            cluster_manager = ClusterManager.from_object(item)
            if cluster_manager.deleting:
                continue
            active.add(
                (cluster_manager.name, workload_namespace(cluster_manager, self.hub_namespace))
            )
            try:
                self.controller_for(cluster_manager).tick()
            except RotationError:
                LOGGER.exception(
                    "Certificate rotation failed for ClusterManager %s", cluster_manager.name
                )
            except Exception:
                METRICS.cert_rotation_errors_total.inc()
                LOGGER.exception(
                    "Unexpected error rotating certificates for ClusterManager %s",
                    cluster_manager.name,
                )
        for key in set(self._controllers) - active:
            del self._controllers[key]

    def run_forever(self, stop: threading.Event) -> None:
        interval = self.config.resync_interval.total_seconds()
        backoff_seconds = 1
        while not stop.is_set():
            try:
                self.run_once()
                backoff_seconds = 1
                stop.wait(timeout=interval)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied while listing ClusterManagers (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                LOGGER.exception("Listing ClusterManagers for certificate rotation failed")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=min(jittered, interval))
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected error in certificate rotation loop")
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=min(jittered, interval))
                backoff_seconds = min(backoff_seconds * 2, 30)
