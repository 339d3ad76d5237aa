"""TLS inspector - retrieves leaf certificates and grades them.

The handshake skips trust validation, so invalid certificates can still be
graded. "Chain valid" is an approximation (time-valid and not self-signed),
not a PKI path validation.
"""
import asyncio
import logging
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID

from .clock import utcnow
from .records import TLSInfo

logger = logging.getLogger(__name__)

# Deductions on a 100-point scale
SELF_SIGNED_PENALTY = 50
EXPIRED_PENALTY = 40
EXPIRING_SOON_DAYS = 30
EXPIRING_SOON_PENALTY = 20
EXPIRING_VERY_SOON_DAYS = 7
EXPIRING_VERY_SOON_PENALTY = 30
WEAK_SIGNATURE_PENALTIES = (("md5", 50), ("sha1", 30))

GRADE_THRESHOLDS = ((90, "A+"), (80, "A"), (70, "B"), (60, "C"), (50, "D"))
FAILING_GRADE = "F"


@dataclass(frozen=True)
class CertificateDescriptor:
    """The certificate fields grading depends on."""
    not_before: datetime
    not_after: datetime
    issuer: str
    subject: str
    signature_algorithm: str = ""
    issuer_name: Optional[str] = None  # Organization or CN, for display
    self_signed_flag: Optional[bool] = None

    @property
    def self_signed(self) -> bool:
        if self.self_signed_flag is not None:
            return self.self_signed_flag
        return bool(self.issuer) and self.issuer == self.subject


@dataclass(frozen=True)
class CertificateReport:
    """Full inspection output; ``TLSInfo`` is the part stored on a result."""
    certificate_valid: bool
    chain_valid: bool
    self_signed: bool
    days_until_expiry: int
    not_before: datetime
    not_after: datetime
    issuer: str
    security_score: int
    security_grade: str

    def to_tls_info(self) -> TLSInfo:
        return TLSInfo(
            valid=self.certificate_valid,
            days_until_expiry=self.days_until_expiry,
            issuer=self.issuer,
            grade=self.security_grade,
            chain_valid=self.chain_valid,
            expires_at=self.not_after,
        )


def days_until(not_after: datetime, now: datetime) -> int:
    """Whole days until expiry, floored (negative once expired)."""
    return (not_after - now).days


def security_score(self_signed: bool, days_until_expiry: int, signature_algorithm: str) -> int:
    score = 100
    if self_signed:
        score -= SELF_SIGNED_PENALTY
    if days_until_expiry < 0:
        score -= EXPIRED_PENALTY
    else:
        if days_until_expiry < EXPIRING_SOON_DAYS:
            score -= EXPIRING_SOON_PENALTY
        if days_until_expiry < EXPIRING_VERY_SOON_DAYS:
            score -= EXPIRING_VERY_SOON_PENALTY

    algorithm = (signature_algorithm or "").lower()
    for marker, penalty in WEAK_SIGNATURE_PENALTIES:
        if marker in algorithm:
            score -= penalty
    return score


def grade_for_score(score: int) -> str:
    for minimum, grade in GRADE_THRESHOLDS:
        if score >= minimum:
            return grade
    return FAILING_GRADE


def security_grade(self_signed: bool, days_until_expiry: int, signature_algorithm: str) -> str:
    """Letter grade A+..F. Expired certificates always fail."""
    if days_until_expiry < 0:
        return FAILING_GRADE
    return grade_for_score(security_score(self_signed, days_until_expiry, signature_algorithm))


def analyze(descriptor: CertificateDescriptor, now: datetime) -> CertificateReport:
    days = days_until(descriptor.not_after, now)
    self_signed = descriptor.self_signed
    certificate_valid = descriptor.not_before <= now <= descriptor.not_after and not self_signed
    score = security_score(self_signed, days, descriptor.signature_algorithm)
    return CertificateReport(
        certificate_valid=certificate_valid,
        chain_valid=certificate_valid,
        self_signed=self_signed,
        days_until_expiry=days,
        not_before=descriptor.not_before,
        not_after=descriptor.not_after,
        issuer=descriptor.issuer_name or descriptor.issuer or "Unknown",
        security_score=score,
        security_grade=security_grade(self_signed, days, descriptor.signature_algorithm),
    )


def _first_attribute(name: x509.Name, oid) -> Optional[str]:
    values = name.get_attributes_for_oid(oid)
    return str(values[0].value) if values else None


def _signature_algorithm(cert: x509.Certificate) -> str:
    try:
        hash_algorithm = cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        # Exotic algorithms fall back to the raw OID
        return cert.signature_algorithm_oid.dotted_string
    if hash_algorithm is None:
        return cert.signature_algorithm_oid.dotted_string
    return f"{hash_algorithm.name}-{cert.signature_algorithm_oid.dotted_string}"


def describe_certificate(cert: x509.Certificate) -> CertificateDescriptor:
    """Build a grading descriptor from a parsed certificate."""
    issuer_name = (
        _first_attribute(cert.issuer, NameOID.ORGANIZATION_NAME)
        or _first_attribute(cert.issuer, NameOID.COMMON_NAME)
    )
    return CertificateDescriptor(
        not_before=cert.not_valid_before_utc.replace(tzinfo=None),
        not_after=cert.not_valid_after_utc.replace(tzinfo=None),
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        signature_algorithm=_signature_algorithm(cert),
        issuer_name=issuer_name,
    )


def split_host_port(url: str) -> tuple[str, int]:
    parts = urlsplit(url)
    return parts.hostname or "", parts.port or 443


class TLSInspector:
    """Fetches and grades the leaf certificate of an https target."""

    def __init__(self, timeout: int = 10, clock=None):
        self.timeout = timeout
        self._now = clock.now if clock else utcnow

    async def inspect(self, url: str) -> Optional[CertificateReport]:
        """Inspect the certificate behind ``url``.

        Returns None for non-https URLs and for unreachable hosts or failed
        handshakes, which callers treat as "no TLS info".
        """
        if urlsplit(url).scheme != "https":
            return None

        host, port = split_host_port(url)
        if not host:
            return None

        try:
            # Socket operations are blocking, run them in the thread pool
            loop = asyncio.get_running_loop()
            cert_der = await asyncio.wait_for(
                loop.run_in_executor(None, self._fetch_certificate, host, port),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"TLS handshake with {host}:{port} timed out after {self.timeout}s")
            return None
        except (OSError, ssl.SSLError) as e:
            logger.warning(f"TLS handshake with {host}:{port} failed: {e}")
            return None

        if not cert_der:
            logger.warning(f"No certificate presented by {host}:{port}")
            return None

        try:
            cert = x509.load_der_x509_certificate(cert_der)
        except ValueError as e:
            logger.warning(f"Could not parse certificate from {host}:{port}: {e}")
            return None

        return analyze(describe_certificate(cert), self._now())

    def _fetch_certificate(self, host: str, port: int) -> Optional[bytes]:
        """Return the DER leaf certificate (blocking operation)."""
        # Read the certificate only, trust is not validated
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        with socket.create_connection((host, port), timeout=self.timeout) as sock:
            with context.wrap_socket(sock, server_hostname=host) as ssock:
                # getpeercert() returns an empty dict under CERT_NONE
                return ssock.getpeercert(binary_form=True)
