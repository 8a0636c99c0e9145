#!/usr/bin/env python3
"""letsencrypt-certificate - Let's Encrypt certificates for Kubernetes secrets

Watches secrets in all namespaces and, for every secret annotated with
estafette.io/letsencrypt-certificate: "true", obtains a certificate from Let's
Encrypt through a DNS-01 challenge on Cloudflare and stores it in the secret.
Certificates are renewed when the hostnames change or when they get older than
DAYS_BEFORE_RENEWAL days.

Secret annotations:

    estafette.io/letsencrypt-certificate                      "true" to enable
    estafette.io/letsencrypt-certificate-hostnames            Comma-separated hostnames
    estafette.io/letsencrypt-certificate-copy-to-all-namespaces
                                                              "true" to copy the secret into
                                                              every other namespace
    estafette.io/letsencrypt-certificate-upload-to-cloudflare "true" to upload the certificate
                                                              as Cloudflare custom certificate
    estafette.io/letsencrypt-certificate-state                Managed by the controller
    estafette.io/letsencrypt-certificate-linked-secret        Set on copies, points back to
                                                              namespace/name of the source

Environment variables:

    Cloudflare:
        CF_API_EMAIL           Cloudflare account email (required)
        CF_API_KEY             Cloudflare global API key (required)
        CF_API_URL             API base URL (default: https://api.cloudflare.com/client/v4)

    Let's Encrypt:
        ACME_DIRECTORY_URL     ACME directory (default: Let's Encrypt production)
        ACCOUNT_JSON_PATH      Account registration file (default: /account/account.json)
        ACCOUNT_KEY_PATH       Account private key file (default: /account/account.key)
        DAYS_BEFORE_RENEWAL    Renew certificates older than this (default: 60)

    DNS-01:
        DNS_PROPAGATION_TIMEOUT_SECONDS
                               Max wait for challenge records to propagate (default: 600)
        DNS_RESOLVERS          Comma-separated resolvers used to check propagation
                               (default: system resolvers)

    Runtime:
        SYNC_MODE              "once" (single pass over all secrets) or "watch" (default: watch)
        WATCH_TIMEOUT_SECONDS  Timeout of a single watch call (default: 300)
        WATCH_INTERVAL_SECONDS Base sleep before reopening a watch (default: 30)
        POLL_INTERVAL_SECONDS  Base sleep between full secret listings (default: 900)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

    All sleeps are jittered by +/- 25%.
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import random
import re
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import dns.exception
import dns.resolver
import josepy as jose
import requests
from acme import challenges, crypto_util, errors, messages
from acme import client as acme_client
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

# =============================================================================
# Configuration
# =============================================================================

# Cloudflare configuration
CF_API_EMAIL = os.getenv("CF_API_EMAIL", "")
CF_API_KEY = os.getenv("CF_API_KEY", "")
CF_API_URL = os.getenv("CF_API_URL", "https://api.cloudflare.com/client/v4")

# Let's Encrypt configuration
ACME_DIRECTORY_URL = os.getenv(
    "ACME_DIRECTORY_URL", "https://acme-v02.api.letsencrypt.org/directory"
)
ACCOUNT_JSON_PATH = os.getenv("ACCOUNT_JSON_PATH", "/account/account.json")
ACCOUNT_KEY_PATH = os.getenv("ACCOUNT_KEY_PATH", "/account/account.key")
DAYS_BEFORE_RENEWAL = int(os.getenv("DAYS_BEFORE_RENEWAL", "60"))

# DNS-01 configuration
DNS_PROPAGATION_TIMEOUT_SECONDS = int(os.getenv("DNS_PROPAGATION_TIMEOUT_SECONDS", "600"))
DNS_RESOLVERS = os.getenv("DNS_RESOLVERS", "")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
WATCH_TIMEOUT_SECONDS = int(os.getenv("WATCH_TIMEOUT_SECONDS", "300"))
WATCH_INTERVAL_SECONDS = int(os.getenv("WATCH_INTERVAL_SECONDS", "30"))
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "900"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ANNOTATION_CERTIFICATE = "estafette.io/letsencrypt-certificate"
ANNOTATION_HOSTNAMES = "estafette.io/letsencrypt-certificate-hostnames"
ANNOTATION_STATE = "estafette.io/letsencrypt-certificate-state"
ANNOTATION_COPY_TO_ALL_NAMESPACES = "estafette.io/letsencrypt-certificate-copy-to-all-namespaces"
ANNOTATION_UPLOAD_TO_CLOUDFLARE = "estafette.io/letsencrypt-certificate-upload-to-cloudflare"
ANNOTATION_LINKED_SECRET = "estafette.io/letsencrypt-certificate-linked-secret"

# Both key families hold the same bytes; "tls.*" lets the secret double as an ingress TLS secret.
DATA_KEY_PREFIXES = ("ssl", "tls")

ATTEMPT_LOCK = timedelta(minutes=15)
EVENT_SOURCE_COMPONENT = "letsencrypt-certificate"
USER_AGENT = "letsencrypt-certificate"

MAX_HOSTNAME_LENGTH = 253
MAX_LABEL_LENGTH = 63
LABEL_RE = re.compile(r"[A-Za-z0-9-]+")
PEM_CERTIFICATE_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----\s*", re.DOTALL
)

# =============================================================================
# Errors
# =============================================================================


class CertificateError(Exception):
    """Base class for failures while processing a secret.

    `reason` is used as the reason of the Kubernetes event recorded for the failure.
    """

    reason = "CertificateError"


class InvalidHostnameError(CertificateError):
    reason = "InvalidHostname"


class ZoneNotFoundError(CertificateError):
    reason = "ZoneNotFound"


class CloudflareAPIError(CertificateError):
    reason = "CloudflareAPIError"


class CredentialLoadError(CertificateError):
    reason = "CredentialLoadFailed"


class AcquisitionError(CertificateError):
    reason = "CertificateNotObtained"


class SecretConflictError(CertificateError):
    reason = "SecretConflict"


class ReplicationError(CertificateError):
    reason = "ReplicationFailed"


class UploadError(CertificateError):
    reason = "UploadFailed"


# =============================================================================
# Enums
# =============================================================================


class ReconcileStatus(Enum):
    """Outcome of a single reconciliation of a secret."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DesiredState:
    """State requested through the annotations of a secret."""

    enabled: bool = False
    hostnames: str = ""
    copy_to_all_namespaces: bool = False
    upload_to_cloudflare: bool = False

    @property
    def hostname_list(self) -> List[str]:
        # Empty entries are kept so validation rejects them.
        return [h.strip() for h in self.hostnames.split(",")]


@dataclass
class CertificateState:
    """State owned by the controller, stored as JSON in the state annotation."""

    enabled: bool = False
    hostnames: str = ""
    copy_to_all_namespaces: bool = False
    upload_to_cloudflare: bool = False
    last_renewed: Optional[datetime] = None
    last_attempt: Optional[datetime] = None

    @classmethod
    def from_json(cls, raw: str) -> "CertificateState":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("certificate state must be a JSON object")
        return cls(
            enabled=_parse_bool(data.get("enabled")),
            hostnames=str(data.get("hostnames") or ""),
            copy_to_all_namespaces=_parse_bool(data.get("copyToAllNamespaces")),
            upload_to_cloudflare=_parse_bool(data.get("uploadToCloudflare")),
            last_renewed=_parse_timestamp(data.get("lastRenewed")),
            last_attempt=_parse_timestamp(data.get("lastAttempt")),
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "enabled": self.enabled,
                "hostnames": self.hostnames,
                "copyToAllNamespaces": self.copy_to_all_namespaces,
                "uploadToCloudflare": self.upload_to_cloudflare,
                "lastRenewed": _format_timestamp(self.last_renewed),
                "lastAttempt": _format_timestamp(self.last_attempt),
            }
        )


@dataclass(frozen=True)
class Zone:
    """A Cloudflare zone."""

    id: str
    name: str


@dataclass(frozen=True)
class CustomCertificate:
    """A Cloudflare custom certificate of a zone."""

    id: str
    zone_id: str = ""
    hosts: Tuple[str, ...] = ()
    expires_on: Optional[datetime] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "CustomCertificate":
        return cls(
            id=str(item.get("id") or ""),
            zone_id=str(item.get("zone_id") or ""),
            hosts=tuple(item.get("hosts") or ()),
            expires_on=_parse_timestamp(item.get("expires_on")),
        )


@dataclass(frozen=True)
class CertificateBundle:
    """Result of obtaining a certificate; only ever persisted inside a secret."""

    certificate: bytes
    private_key: bytes
    domain: str
    issuer_certificate: Optional[bytes] = None
    cert_url: str = ""
    cert_stable_url: str = ""

    def metadata(self) -> Dict[str, str]:
        return {
            "domain": self.domain,
            "certUrl": self.cert_url,
            "certStableUrl": self.cert_stable_url,
        }


@dataclass
class LetsEncryptAccount:
    """Let's Encrypt account loaded from the mounted account files."""

    email: str
    key: Any
    registration_uri: str = ""
    registration_body: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    error: Optional[CertificateError] = None


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "t", "true"}


def _split_csv(value: str) -> List[str]:
    return [h.strip() for h in (value or "").split(",") if h.strip()]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, returning None for empty or invalid values."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def apply_jitter(base: float) -> float:
    """Return a random duration in [0.75 * base, 1.25 * base)."""
    deviation = 0.25 * base
    return base - deviation + random.random() * 2 * deviation


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _secret_id(secret: client.V1Secret) -> str:
    return f"{secret.metadata.namespace}/{secret.metadata.name}"


def _split_pem_certificates(pem: str) -> List[str]:
    return [m.group(0).strip() + "\n" for m in PEM_CERTIFICATE_RE.finditer(pem or "")]


# =============================================================================
# Hostname Validation
# =============================================================================


def validate_hostname(hostname: str) -> bool:
    """Validate a hostname against the RFC 1035 length and character rules.

    A leading "*" label is allowed for wildcard certificates.
    """
    if len(hostname.encode("utf-8")) > MAX_HOSTNAME_LENGTH:
        return False

    labels = hostname.split(".")
    if len(labels) < 2:
        return False

    for index, label in enumerate(labels):
        if index == 0 and label == "*":
            continue
        if len(label.encode("utf-8")) > MAX_LABEL_LENGTH:
            return False
        if not LABEL_RE.fullmatch(label):
            return False

    return True


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareClient:
    """Client for the parts of the Cloudflare v4 API the controller uses."""

    def __init__(self, email: str, api_key: str, base_url: str = CF_API_URL, timeout: float = 30):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(
            {
                "X-Auth-Email": email,
                "X-Auth-Key": api_key,
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._session.request(
            method, f"{self._base_url}{path}", timeout=self._timeout, **kwargs
        )
        try:
            envelope = response.json()
        except ValueError:
            response.raise_for_status()
            raise CloudflareAPIError(f"{method} {path}: response is not JSON")

        if not isinstance(envelope, dict) or not envelope.get("success"):
            errors_ = envelope.get("errors") if isinstance(envelope, dict) else envelope
            messages_ = envelope.get("messages") if isinstance(envelope, dict) else ""
            raise CloudflareAPIError(f"{method} {path} failed | {errors_} | {messages_}")
        return envelope

    # -- zones ----------------------------------------------------------------

    def get_zones_by_name(self, zone_name: str) -> Dict[str, Any]:
        """List zones whose name equals `zone_name`; returns the raw envelope."""
        return self._request("GET", "/zones/", params={"name": zone_name})

    def get_zone_by_dns_name(self, dns_name: str) -> Zone:
        """Resolve the zone a DNS name belongs to.

        Starts with the last two labels and only widens the candidate when the
        lookup is empty or does not fit a single page, which handles zones below
        multi-label suffixes like co.uk without a public suffix list.
        """
        parts = dns_name.split(".")
        if len(parts) < 2:
            raise InvalidHostnameError(
                f"dns name '{dns_name}' has too few parts, should at least have a tld and domain name"
            )

        for number_of_parts in range(2, len(parts) + 1):
            zone_name = ".".join(parts[-number_of_parts:])
            envelope = self.get_zones_by_name(zone_name)
            info = envelope.get("result_info") or {}
            count = int(info.get("count") or 0)
            per_page = int(info.get("per_page") or 0)

            if 0 < count <= per_page:
                for item in envelope.get("result") or []:
                    if item.get("name") == zone_name:
                        return Zone(id=str(item["id"]), name=zone_name)
                raise ZoneNotFoundError(f"no zone matches name '{zone_name}'")

            logger.debug(
                f"Zone lookup for '{zone_name}' returned {count} zone(s) for {per_page} per page, widening"
            )

        raise ZoneNotFoundError(f"no matching zone has been found for '{dns_name}'")

    # -- custom certificates --------------------------------------------------

    def list_custom_certificates(self, zone: Zone) -> List[CustomCertificate]:
        envelope = self._request("GET", f"/zones/{zone.id}/custom_certificates")
        return [CustomCertificate.from_api(item) for item in envelope.get("result") or []]

    def create_custom_certificate(
        self, zone: Zone, certificate: str, private_key: str
    ) -> CustomCertificate:
        envelope = self._request(
            "POST",
            f"/zones/{zone.id}/custom_certificates",
            json={"certificate": certificate, "private_key": private_key},
        )
        return CustomCertificate.from_api(envelope.get("result") or {})

    def patch_custom_certificate(
        self, zone: Zone, certificate_id: str, certificate: str, private_key: str
    ) -> CustomCertificate:
        envelope = self._request(
            "PATCH",
            f"/zones/{zone.id}/custom_certificates/{certificate_id}",
            json={"certificate": certificate, "private_key": private_key},
        )
        return CustomCertificate.from_api(envelope.get("result") or {})

    def upsert_custom_certificate(
        self, dns_name: str, certificate: str, private_key: str
    ) -> CustomCertificate:
        """Create or update the custom certificate of the zone `dns_name` belongs to.

        Accounts are expected to have a quota of one custom certificate per zone,
        so the first existing certificate is the one that gets updated. When its
        expiry equals the new certificate's it is already current and nothing is
        written, since Cloudflare rejects resubmitting an identical certificate.
        """
        zone = self.get_zone_by_dns_name(dns_name)
        existing = self.list_custom_certificates(zone)
        if not existing:
            logger.info(f"Creating {self.name} custom certificate for zone {zone.name}")
            return self.create_custom_certificate(zone, certificate, private_key)

        current = existing[0]
        if current.expires_on is not None and current.expires_on == certificate_not_after(
            certificate
        ):
            logger.info(
                f"{self.name} custom certificate {current.id} for zone {zone.name} is up to date"
            )
            return current

        logger.info(f"Updating {self.name} custom certificate {current.id} for zone {zone.name}")
        return self.patch_custom_certificate(zone, current.id, certificate, private_key)

    # -- dns records ----------------------------------------------------------

    def list_txt_records(self, zone: Zone, name: str) -> List[Dict[str, Any]]:
        envelope = self._request(
            "GET", f"/zones/{zone.id}/dns_records", params={"type": "TXT", "name": name}
        )
        return list(envelope.get("result") or [])

    def create_txt_record(self, zone: Zone, name: str, content: str, ttl: int = 120) -> str:
        envelope = self._request(
            "POST",
            f"/zones/{zone.id}/dns_records",
            json={"type": "TXT", "name": name, "content": content, "ttl": ttl},
        )
        record_id = str((envelope.get("result") or {}).get("id") or "")
        logger.debug(f"Created TXT record {name} ({record_id})")
        return record_id

    def delete_txt_record(self, zone: Zone, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone.id}/dns_records/{record_id}")
        logger.debug(f"Deleted TXT record {record_id} in zone {zone.name}")


def certificate_not_after(certificate_pem: str) -> datetime:
    """Return the NotAfter of the first certificate in a PEM bundle."""
    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem.encode("utf-8"))
    except ValueError as e:
        raise UploadError(f"Decoding certificate failed: {e}") from e
    return certificate.not_valid_after_utc


def upload_to_cloudflare(
    cloudflare: CloudflareClient, hostnames: List[str], certificate: bytes, private_key: bytes
) -> None:
    """Upload the certificate as custom certificate to the zone of every hostname."""
    for hostname in hostnames:
        try:
            cloudflare.upsert_custom_certificate(
                hostname, certificate.decode("utf-8"), private_key.decode("utf-8")
            )
        except (CertificateError, requests.exceptions.RequestException) as e:
            raise UploadError(f"Uploading certificate for {hostname} to Cloudflare failed: {e}") from e


# =============================================================================
# Certificate Acquisition
# =============================================================================


def load_private_key(path: str) -> Any:
    """Load an RSA or EC private key from a PEM file."""
    try:
        key_bytes = Path(path).read_bytes()
        key = serialization.load_pem_private_key(key_bytes, password=None)
    except (OSError, ValueError, TypeError) as e:
        raise CredentialLoadError(f"Failed to load account key {path}: {e}") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise CredentialLoadError(f"Unknown private key type in {path}")
    return key


def load_account(json_path: str, key_path: str) -> LetsEncryptAccount:
    """Load the account registration and its private key from disk."""
    try:
        data = json.loads(Path(json_path).read_text("utf-8"))
    except (OSError, ValueError) as e:
        raise CredentialLoadError(f"Failed to load account {json_path}: {e}") from e
    if not isinstance(data, dict):
        raise CredentialLoadError(f"Account {json_path} must contain a JSON object")

    registration = data.get("registration") or {}
    if not isinstance(registration, dict) or not isinstance(registration.get("body") or {}, dict):
        raise CredentialLoadError(f"Account {json_path} has a malformed registration")
    return LetsEncryptAccount(
        email=str(data.get("email") or ""),
        key=load_private_key(key_path),
        registration_uri=str(registration.get("uri") or ""),
        registration_body=dict(registration.get("body") or {}),
    )


def _account_jwk(key: Any) -> Tuple[jose.JWK, jose.JWASignature]:
    if isinstance(key, rsa.RSAPrivateKey):
        return jose.JWKRSA(key=key), jose.RS256
    algorithms = {"secp256r1": jose.ES256, "secp384r1": jose.ES384, "secp521r1": jose.ES512}
    algorithm = algorithms.get(key.curve.name)
    if algorithm is None:
        raise CredentialLoadError(f"Unsupported account key curve {key.curve.name}")
    return jose.JWKEC(key=key), algorithm


def wait_for_txt_record(
    name: str,
    value: str,
    timeout: float,
    resolvers: List[str] | None = None,
    interval: float = 10.0,
) -> None:
    """Block until `name` resolves to a TXT record containing `value`."""
    resolver = dns.resolver.Resolver()
    resolver.cache = None
    if resolvers:
        resolver.nameservers = resolvers

    deadline = time.monotonic() + timeout
    while True:
        try:
            answers = resolver.resolve(name, "TXT")
            for rdata in answers:
                if any(s.decode("utf-8") == value for s in rdata.strings):
                    logger.debug(f"TXT record {name} has propagated")
                    return
        except dns.exception.DNSException as e:
            logger.debug(f"TXT record {name} not resolvable yet: {e}")

        if time.monotonic() >= deadline:
            raise AcquisitionError(f"TXT record {name} did not propagate within {timeout}s")
        time.sleep(interval)


class CertificateProvider(ABC):
    """Abstract base class for certificate authorities."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def obtain_certificate(
        self, hostnames: List[str], account: LetsEncryptAccount
    ) -> CertificateBundle:
        """Obtain a single certificate covering all hostnames."""
        pass


class LetsEncryptProvider(CertificateProvider):
    """Let's Encrypt over ACME v2, validated with DNS-01 records in Cloudflare."""

    CHALLENGE_PREFIX = "_acme-challenge."

    def __init__(
        self,
        cloudflare: CloudflareClient,
        directory_url: str = ACME_DIRECTORY_URL,
        propagation_timeout: float = DNS_PROPAGATION_TIMEOUT_SECONDS,
        resolvers: List[str] | None = None,
        key_size: int = 2048,
    ):
        self._cloudflare = cloudflare
        self._directory_url = directory_url
        self._propagation_timeout = propagation_timeout
        self._resolvers = resolvers or []
        self._key_size = key_size

    @property
    def name(self) -> str:
        return "Let's Encrypt"

    def _create_client(self, account: LetsEncryptAccount) -> acme_client.ClientV2:
        jwk, algorithm = _account_jwk(account.key)
        regr = None
        if account.registration_uri:
            try:
                body = messages.Registration.from_json(account.registration_body)
            except jose.DeserializationError as e:
                raise CredentialLoadError(f"Account registration is malformed: {e}") from e
            regr = messages.RegistrationResource(uri=account.registration_uri, body=body)
        net = acme_client.ClientNetwork(jwk, alg=algorithm, account=regr, user_agent=USER_AGENT)
        directory = acme_client.ClientV2.get_directory(self._directory_url, net)
        acme = acme_client.ClientV2(directory, net=net)

        if regr is None:
            logger.info(f"Registering {self.name} account for {account.email}")
            try:
                acme.new_account(
                    messages.NewRegistration.from_data(
                        email=account.email or None, terms_of_service_agreed=True
                    )
                )
            except errors.ConflictError as e:
                net.account = messages.RegistrationResource(
                    uri=e.location, body=messages.Registration()
                )
        return acme

    def _generate_key(self) -> bytes:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def _cleanup_challenge_records(self, hostnames: List[str]) -> None:
        """Remove leftover challenge records from earlier, interrupted attempts."""
        for hostname in hostnames:
            record_name = self.CHALLENGE_PREFIX + hostname.removeprefix("*.")
            zone = self._cloudflare.get_zone_by_dns_name(record_name)
            for record in self._cloudflare.list_txt_records(zone, record_name):
                logger.info(f"Cleaning up TXT record {record_name}")
                self._cloudflare.delete_txt_record(zone, str(record["id"]))

    def obtain_certificate(
        self, hostnames: List[str], account: LetsEncryptAccount
    ) -> CertificateBundle:
        created: List[Tuple[Zone, str]] = []
        try:
            self._cleanup_challenge_records(hostnames)
            acme = self._create_client(account)

            private_key = self._generate_key()
            csr = crypto_util.make_csr(private_key, hostnames)
            order = acme.new_order(csr)

            answers = []
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                domain = authz.body.identifier.value
                challb = next(
                    (c for c in authz.body.challenges if isinstance(c.chall, challenges.DNS01)),
                    None,
                )
                if challb is None:
                    raise AcquisitionError(f"No dns-01 challenge offered for {domain}")

                response, validation = challb.response_and_validation(acme.net.key)
                record_name = challb.chall.validation_domain_name(domain)
                zone = self._cloudflare.get_zone_by_dns_name(record_name)
                created.append((zone, self._cloudflare.create_txt_record(zone, record_name, validation)))
                answers.append((challb, response, record_name, validation))

            for _, _, record_name, validation in answers:
                logger.info(f"Waiting for TXT record {record_name} to propagate")
                wait_for_txt_record(
                    record_name, validation, self._propagation_timeout, self._resolvers
                )

            for challb, response, _, _ in answers:
                acme.answer_challenge(challb, response)

            deadline = datetime.now() + timedelta(seconds=self._propagation_timeout)
            order = acme.poll_and_finalize(order, deadline=deadline)
        except (
            errors.Error,
            jose.Error,
            requests.exceptions.RequestException,
            CloudflareAPIError,
            ValueError,
        ) as e:
            raise AcquisitionError(f"Obtaining certificate for {', '.join(hostnames)} failed: {e}") from e
        finally:
            for zone, record_id in created:
                try:
                    self._cloudflare.delete_txt_record(zone, record_id)
                except (CertificateError, requests.exceptions.RequestException) as e:
                    logger.warning(f"Failed to clean up TXT record {record_id}: {e}")

        chain = _split_pem_certificates(order.fullchain_pem)
        if not chain:
            raise AcquisitionError(f"No certificate returned for {', '.join(hostnames)}")

        return CertificateBundle(
            certificate="".join(chain).encode("utf-8"),
            private_key=private_key,
            issuer_certificate="".join(chain[1:]).encode("utf-8") if len(chain) > 1 else None,
            domain=hostnames[0],
            cert_url=order.uri or "",
            cert_stable_url=order.body.certificate or "",
        )


# =============================================================================
# Secret State
# =============================================================================


def get_desired_state(secret: client.V1Secret) -> DesiredState:
    annotations = secret.metadata.annotations or {}
    return DesiredState(
        enabled=annotations.get(ANNOTATION_CERTIFICATE, "false") == "true",
        hostnames=annotations.get(ANNOTATION_HOSTNAMES, ""),
        copy_to_all_namespaces=_parse_bool(annotations.get(ANNOTATION_COPY_TO_ALL_NAMESPACES)),
        upload_to_cloudflare=_parse_bool(annotations.get(ANNOTATION_UPLOAD_TO_CLOUDFLARE)),
    )


def get_current_state(secret: client.V1Secret) -> CertificateState:
    """Read the state annotation; a missing or malformed one yields an empty state."""
    raw = (secret.metadata.annotations or {}).get(ANNOTATION_STATE, "")
    if not raw:
        return CertificateState()
    try:
        return CertificateState.from_json(raw)
    except (ValueError, TypeError) as e:
        logger.debug(f"Ignoring malformed state on secret {_secret_id(secret)}: {e}")
        return CertificateState()


def set_current_state(secret: client.V1Secret, state: CertificateState) -> None:
    if secret.metadata.annotations is None:
        secret.metadata.annotations = {}
    secret.metadata.annotations[ANNOTATION_STATE] = state.to_json()


def materialize_certificate(secret: client.V1Secret, bundle: CertificateBundle) -> None:
    """Write the bundle into the secret data under the ssl.* and tls.* keys."""
    if secret.data is None:
        secret.data = {}

    metadata = json.dumps(bundle.metadata(), indent="\t").encode("utf-8")
    for prefix in DATA_KEY_PREFIXES:
        secret.data[f"{prefix}.crt"] = _b64(bundle.certificate)
        secret.data[f"{prefix}.key"] = _b64(bundle.private_key)
        secret.data[f"{prefix}.pem"] = _b64(bundle.certificate + bundle.private_key)
        if bundle.issuer_certificate:
            secret.data[f"{prefix}.issuer.crt"] = _b64(bundle.issuer_certificate)
        secret.data[f"{prefix}.json"] = _b64(metadata)


# =============================================================================
# Events
# =============================================================================


class EventRecorder:
    """Records one event per secret and action, bumping its count on repeats."""

    def __init__(self, core_api: client.CoreV1Api, now_fn: Callable[[], datetime] = utc_now):
        self.core_api = core_api
        self.now_fn = now_fn

    def record(
        self, secret: client.V1Secret, event_type: str, action: str, reason: str, message: str
    ) -> client.CoreV1Event:
        namespace = secret.metadata.namespace
        # Object names must be lowercase.
        event_name = f"{secret.metadata.name}-{action}".lower()
        now = self.now_fn()

        try:
            event = self.core_api.read_namespaced_event(event_name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            event = None

        if event is not None:
            event.count = (event.count or 0) + 1
            event.last_timestamp = now
            event.reason = reason
            event.message = message
            event.type = event_type
            logger.debug(f"Updating event {namespace}/{event_name} (count {event.count})")
            return self.core_api.replace_namespaced_event(event_name, namespace, event)

        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(name=event_name, namespace=namespace),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Secret",
                name=secret.metadata.name,
                namespace=namespace,
                uid=secret.metadata.uid,
                resource_version=secret.metadata.resource_version,
            ),
            type=event_type,
            action=action,
            reason=reason,
            message=message,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=EVENT_SOURCE_COMPONENT),
            reporting_component=EVENT_SOURCE_COMPONENT,
        )
        logger.debug(f"Creating event {namespace}/{event_name}")
        return self.core_api.create_namespaced_event(namespace, event)


# =============================================================================
# Namespace Replication
# =============================================================================


class NamespaceReplicator:
    """Copies certificate secrets into other namespaces.

    Copies carry only the data, the state annotation and a link back to their
    source; without the enabling annotations they never get renewed themselves.
    """

    def __init__(self, core_api: client.CoreV1Api):
        self.core_api = core_api

    def replicate_to_all(self, secret: client.V1Secret) -> None:
        namespaces = self.core_api.list_namespace().items
        for namespace in namespaces:
            name = namespace.metadata.name
            if name == secret.metadata.namespace:
                continue
            if namespace.status is not None and namespace.status.phase not in (None, "Active"):
                logger.debug(f"Skipping namespace {name} in phase {namespace.status.phase}")
                continue
            self.upsert_copy(secret, name)

    def replicate_on_namespace_created(self, namespace: client.V1Namespace) -> None:
        name = namespace.metadata.name
        secrets = self.core_api.list_secret_for_all_namespaces().items
        for secret in secrets:
            if secret.metadata.namespace == name:
                continue
            if not get_desired_state(secret).copy_to_all_namespaces:
                continue
            logger.info(f"Copying secret {_secret_id(secret)} to new namespace {name}")
            self.upsert_copy(secret, name)

    def upsert_copy(self, secret: client.V1Secret, namespace: str) -> client.V1Secret:
        source_annotations = secret.metadata.annotations or {}
        state = source_annotations.get(ANNOTATION_STATE, "")
        data = dict(secret.data or {})

        try:
            existing = self.core_api.read_namespaced_secret(secret.metadata.name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        if existing is None:
            logger.info(f"Creating secret {namespace}/{secret.metadata.name} from {_secret_id(secret)}")
            copy_ = client.V1Secret(
                metadata=client.V1ObjectMeta(
                    name=secret.metadata.name,
                    namespace=namespace,
                    annotations={
                        ANNOTATION_STATE: state,
                        ANNOTATION_LINKED_SECRET: _secret_id(secret),
                    },
                ),
                type=secret.type,
                data=data,
            )
            return self.core_api.create_namespaced_secret(namespace, copy_)

        existing_state = (existing.metadata.annotations or {}).get(ANNOTATION_STATE)
        if existing_state == state and (existing.data or {}) == data:
            logger.debug(f"Secret {namespace}/{secret.metadata.name} is up to date")
            return existing

        logger.info(f"Updating secret {namespace}/{secret.metadata.name} from {_secret_id(secret)}")
        if existing.metadata.annotations is None:
            existing.metadata.annotations = {}
        existing.metadata.annotations[ANNOTATION_STATE] = state
        existing.data = data
        return self.core_api.replace_namespaced_secret(secret.metadata.name, namespace, existing)


# =============================================================================
# Core Reconciler
# =============================================================================


def needs_renewal(
    desired: DesiredState,
    current: CertificateState,
    now: datetime,
    renewal_age: timedelta = timedelta(days=DAYS_BEFORE_RENEWAL),
    attempt_lock: timedelta = ATTEMPT_LOCK,
) -> bool:
    """Decide whether a certificate should be (re)issued on this pass.

    A recent last attempt locks the secret, whatever else changed.
    """
    if not desired.enabled or not desired.hostnames:
        return False
    if current.last_attempt is not None and now - current.last_attempt <= attempt_lock:
        return False
    if desired.hostnames != current.hostnames:
        return True
    return current.last_renewed is None or now - current.last_renewed > renewal_age


class CertificateReconciler:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        certificate_provider: CertificateProvider,
        cloudflare: CloudflareClient,
        account_loader: Callable[[], LetsEncryptAccount] | None = None,
        event_recorder: EventRecorder | None = None,
        replicator: NamespaceReplicator | None = None,
        renewal_age: timedelta = timedelta(days=DAYS_BEFORE_RENEWAL),
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.core_api = core_api
        self.certificate_provider = certificate_provider
        self.cloudflare = cloudflare
        self.account_loader = account_loader or (
            lambda: load_account(ACCOUNT_JSON_PATH, ACCOUNT_KEY_PATH)
        )
        self.event_recorder = event_recorder or EventRecorder(core_api, now_fn=now_fn)
        self.replicator = replicator or NamespaceReplicator(core_api)
        self.renewal_age = renewal_age
        self.now_fn = now_fn

    def _replace_secret(self, secret: client.V1Secret) -> client.V1Secret:
        try:
            return self.core_api.replace_namespaced_secret(
                secret.metadata.name, secret.metadata.namespace, secret
            )
        except ApiException as e:
            if e.status == 409:
                raise SecretConflictError(f"Secret {_secret_id(secret)} was modified: {e.reason}") from e
            raise

    def process_secret(self, secret: client.V1Secret, initiator: str) -> ReconcileStatus:
        """Renew the certificate of a secret when needed.

        Returns SKIPPED when nothing has to happen and SUCCEEDED after the
        certificate got stored; failures are raised as CertificateError.
        """
        prefix = f"[{initiator}] Secret {_secret_id(secret)} -"
        desired = get_desired_state(secret)
        current = get_current_state(secret)
        now = self.now_fn()

        if not needs_renewal(desired, current, now, renewal_age=self.renewal_age):
            return ReconcileStatus.SKIPPED

        logger.info(
            f"{prefix} Certificates are older than {self.renewal_age.days} days or hostnames "
            f"have changed ({desired.hostnames}), renewing them with {self.certificate_provider.name}"
        )

        # Lock for ATTEMPT_LOCK; this update triggers a watch event that is skipped because of it.
        current.last_attempt = now
        set_current_state(secret, current)
        secret = self._replace_secret(secret)

        hostnames = desired.hostname_list
        invalid = [h for h in hostnames if not validate_hostname(h)]
        if invalid:
            raise InvalidHostnameError(f"Invalid hostname(s): {', '.join(repr(h) for h in invalid)}")

        logger.info(f"{prefix} Loading account")
        account = self.account_loader()

        logger.info(f"{prefix} Obtaining certificate for {', '.join(hostnames)}")
        bundle = self.certificate_provider.obtain_certificate(hostnames, account)

        # Obtaining can take minutes; refetch so the final update is not stale.
        secret = self.core_api.read_namespaced_secret(
            secret.metadata.name, secret.metadata.namespace
        )
        set_current_state(
            secret,
            CertificateState(
                enabled=desired.enabled,
                hostnames=desired.hostnames,
                copy_to_all_namespaces=desired.copy_to_all_namespaces,
                upload_to_cloudflare=desired.upload_to_cloudflare,
                last_renewed=self.now_fn(),
                last_attempt=current.last_attempt,
            ),
        )
        materialize_certificate(secret, bundle)
        logger.info(f"{prefix} Storing certificate ({len(secret.data)} data items)")
        secret = self._replace_secret(secret)

        failures: List[CertificateError] = []
        if desired.copy_to_all_namespaces:
            try:
                self.replicator.replicate_to_all(secret)
            except ApiException as e:
                failures.append(ReplicationError(f"Copying secret to all namespaces failed: {e.reason}"))
        if desired.upload_to_cloudflare:
            try:
                upload_to_cloudflare(self.cloudflare, hostnames, bundle.certificate, bundle.private_key)
            except UploadError as e:
                failures.append(e)
        if failures:
            raise failures[0]

        logger.info(f"{prefix} Certificates have been stored in secret successfully")
        return ReconcileStatus.SUCCEEDED

    def reconcile_secret(self, secret: client.V1Secret, initiator: str) -> ReconcileResult:
        """Process a secret, isolating and reporting any failure."""
        try:
            status = self.process_secret(secret, initiator)
        except CertificateError as e:
            logger.error(f"[{initiator}] Secret {_secret_id(secret)} - {e}")
            self._record(secret, "Warning", "Failed", e.reason, str(e))
            return ReconcileResult(ReconcileStatus.FAILED, e)
        except Exception as e:
            logger.error(f"[{initiator}] Secret {_secret_id(secret)} - {e}", exc_info=True)
            error = CertificateError(str(e) or type(e).__name__)
            self._record(secret, "Warning", "Failed", error.reason, str(error))
            return ReconcileResult(ReconcileStatus.FAILED, error)

        if status == ReconcileStatus.SUCCEEDED:
            self._record(
                secret,
                "Normal",
                "Succeeded",
                "CertificateObtained",
                f"Certificate for {get_desired_state(secret).hostnames} has been obtained",
            )
        return ReconcileResult(status)

    def _record(
        self, secret: client.V1Secret, event_type: str, action: str, reason: str, message: str
    ) -> None:
        try:
            self.event_recorder.record(secret, event_type, action, reason, message)
        except Exception as e:
            logger.warning(f"Failed to record event for secret {_secret_id(secret)}: {e}")


# =============================================================================
# Dispatcher
# =============================================================================


class InFlightTracker:
    """Counts reconciliations in progress so shutdown can wait for them."""

    def __init__(self) -> None:
        self._count = 0
        self._closed = False
        self._condition = threading.Condition()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    @contextlib.contextmanager
    def track(self) -> Iterator[bool]:
        """Yield True when the work may start, False once the tracker is closed."""
        with self._condition:
            if self._closed:
                started = False
            else:
                self._count += 1
                started = True
        try:
            yield started
        finally:
            if started:
                with self._condition:
                    self._count -= 1
                    self._condition.notify_all()

    def close_and_wait(self, timeout: float | None = None) -> bool:
        with self._condition:
            self._closed = True
            return self._condition.wait_for(lambda: self._count == 0, timeout=timeout)


class CertificateController:
    """Runs the secret watch, the namespace watch and the secret poll loop.

    All loops share the stateless reconciler; every piece of state that spans
    reconciliations lives in the secrets' own annotations.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        reconciler: CertificateReconciler,
        replicator: NamespaceReplicator | None = None,
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
        watch_interval: float = WATCH_INTERVAL_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.core_api = core_api
        self.reconciler = reconciler
        self.replicator = replicator or reconciler.replicator
        self.watch_timeout = watch_timeout
        self.watch_interval = watch_interval
        self.poll_interval = poll_interval
        self.watch_factory = watch_factory
        self.started_at = now_fn()
        self.stop_event = threading.Event()
        self.in_flight = InFlightTracker()
        self._watchers: List[watch.Watch] = []
        self._watchers_lock = threading.Lock()

    def dispatch(self, secret: client.V1Secret, initiator: str) -> Optional[ReconcileResult]:
        with self.in_flight.track() as started:
            if not started or self.stop_event.is_set():
                return None
            return self.reconciler.reconcile_secret(secret, initiator)

    def _sleep(self, base: float) -> None:
        sleep_time = apply_jitter(base)
        logger.debug(f"Sleeping for {sleep_time:.0f} seconds")
        self.stop_event.wait(sleep_time)

    @contextlib.contextmanager
    def _open_watch(self) -> Iterator[watch.Watch]:
        w = self.watch_factory()
        with self._watchers_lock:
            self._watchers.append(w)
        try:
            yield w
        finally:
            with self._watchers_lock:
                self._watchers.remove(w)

    def watch_secrets_once(self) -> None:
        logger.info("Watching secrets for all namespaces")
        with self._open_watch() as w:
            for event in w.stream(
                self.core_api.list_secret_for_all_namespaces, timeout_seconds=self.watch_timeout
            ):
                if self.stop_event.is_set():
                    break
                event_type = event.get("type")
                if event_type in ("ADDED", "MODIFIED"):
                    self.dispatch(event["object"], f"watcher:{event_type}")

    def watch_namespaces_once(self) -> None:
        logger.info("Watching namespaces")
        with self._open_watch() as w:
            for event in w.stream(self.core_api.list_namespace, timeout_seconds=self.watch_timeout):
                if self.stop_event.is_set():
                    break
                if event.get("type") != "ADDED":
                    continue
                namespace = event["object"]
                created = namespace.metadata.creation_timestamp
                if created is None or created <= self.started_at:
                    continue
                with self.in_flight.track() as started:
                    if not started:
                        break
                    try:
                        self.replicator.replicate_on_namespace_created(namespace)
                    except ApiException as e:
                        logger.error(
                            f"[namespace-watcher] Copying secrets to namespace "
                            f"{namespace.metadata.name} failed: {e.reason}"
                        )

    def poll_once(self) -> None:
        logger.info("Listing secrets for all namespaces")
        secrets = self.core_api.list_secret_for_all_namespaces().items
        logger.info(f"Cluster has {len(secrets)} secrets")
        for secret in secrets:
            if self.stop_event.is_set():
                break
            self.dispatch(secret, "poller")

    def _run_loop(self, name: str, once: Callable[[], None], interval: float) -> None:
        while not self.stop_event.is_set():
            try:
                once()
            except Exception as e:
                logger.error(f"{name} failed: {e}")
            if self.stop_event.is_set():
                break
            self._sleep(interval)
        logger.info(f"{name} exiting")

    def run_secret_watch_loop(self) -> None:
        self._run_loop("Secret watcher", self.watch_secrets_once, self.watch_interval)

    def run_namespace_watch_loop(self) -> None:
        self._run_loop("Namespace watcher", self.watch_namespaces_once, self.watch_interval)

    def run_poll_loop(self) -> None:
        self._run_loop("Secret poller", self.poll_once, self.poll_interval)

    def start(self) -> List[threading.Thread]:
        threads = [
            threading.Thread(target=self.run_secret_watch_loop, name="secret-watcher", daemon=True),
            threading.Thread(
                target=self.run_namespace_watch_loop, name="namespace-watcher", daemon=True
            ),
            threading.Thread(target=self.run_poll_loop, name="secret-poller", daemon=True),
        ]
        for thread in threads:
            thread.start()
        return threads

    def stop(self, timeout: float | None = None) -> bool:
        """Stop all loops and wait for in-flight reconciliations to finish."""
        self.stop_event.set()
        with self._watchers_lock:
            watchers = list(self._watchers)
        for w in watchers:
            w.stop()
        idle = self.in_flight.close_and_wait(timeout)
        if not idle:
            logger.warning(f"{self.in_flight.count} reconciliation(s) still in flight")
        return idle


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors_ = []

    if not CF_API_EMAIL:
        errors_.append("CF_API_EMAIL is required. Set it to your Cloudflare API email.")
    if not CF_API_KEY:
        errors_.append("CF_API_KEY is required. Set it to your Cloudflare API key.")
    if SYNC_MODE not in ("once", "watch"):
        errors_.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if DNS_PROPAGATION_TIMEOUT_SECONDS < 600:
        logger.warning(
            f"DNS_PROPAGATION_TIMEOUT_SECONDS={DNS_PROPAGATION_TIMEOUT_SECONDS} is below 600, "
            "challenges may fail before Cloudflare records propagate"
        )
    for path in (ACCOUNT_JSON_PATH, ACCOUNT_KEY_PATH):
        if not os.path.exists(path):
            logger.warning(f"Account file {path} does not exist yet, renewals will fail until it does")

    if errors_:
        for error in errors_:
            logger.error(error)
        return False

    return True


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
    except ConfigException:
        logger.info("Not running in cluster, loading kubeconfig")
        config.load_kube_config()


def main():
    """Main entry point."""
    logger.info("letsencrypt-certificate: kubernetes secrets -> Let's Encrypt")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    load_kubernetes_config()
    core_api = client.CoreV1Api()

    cloudflare = CloudflareClient(CF_API_EMAIL, CF_API_KEY, CF_API_URL)
    provider = LetsEncryptProvider(
        cloudflare,
        directory_url=ACME_DIRECTORY_URL,
        propagation_timeout=DNS_PROPAGATION_TIMEOUT_SECONDS,
        resolvers=_split_csv(DNS_RESOLVERS),
    )
    reconciler = CertificateReconciler(
        core_api=core_api,
        certificate_provider=provider,
        cloudflare=cloudflare,
        renewal_age=timedelta(days=DAYS_BEFORE_RENEWAL),
    )
    controller = CertificateController(core_api=core_api, reconciler=reconciler)

    logger.info(f"Certificate provider: {provider.name} ({ACME_DIRECTORY_URL})")
    logger.info(f"DNS provider: {cloudflare.name}")
    logger.info(f"Renewal after: {DAYS_BEFORE_RENEWAL} days")
    logger.info(f"Sync mode: {SYNC_MODE}")

    try:
        if SYNC_MODE == "once":
            controller.poll_once()
            return

        logger.info(
            f"Watch timeout: {WATCH_TIMEOUT_SECONDS}s, watch interval: {WATCH_INTERVAL_SECONDS}s, "
            f"poll interval: {POLL_INTERVAL_SECONDS}s"
        )

        def shutdown(signum, frame):
            logger.info(f"Signal {signal.Signals(signum).name} received, shutting down gracefully...")
            controller.stop_event.set()

        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

        controller.start()
        while not controller.stop_event.wait(1):
            pass

        controller.stop()
        logger.info("Shutdown complete")

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
