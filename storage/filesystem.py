"""
PEM key and certificate cache.

Directory layout (one cache directory per account):
  <cache_dir>/
      acme_account.key   - ACME account key (P-256), shared by all renewals
      <domain>.key       - Domain private key, reused across renewals
      <domain>.crt       - Leaf certificate followed by its intermediates

The directory is created 0o700 and every file 0o600. All writes are atomic:
temp file + fsync + rename.
"""
from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from autocert.crypto import PrivateKey, generate_ec_key, private_key_to_pem, public_key_matches
from autocert.errors import CacheIOError, CertificateNotFoundError, MalformedCertificateError
from storage.atomic import atomic_write_bytes, ensure_dir

logger = logging.getLogger(__name__)

ACCOUNT_KEY_FILE = "acme_account.key"
KEY_SUFFIX = ".key"
CERT_SUFFIX = ".crt"


# ─── Paths ────────────────────────────────────────────────────────────────────


def _normalize_domain(domain: str) -> str:
    return domain.strip().rstrip(".").lower()


def account_key_path(cache_dir: str | Path) -> Path:
    return Path(cache_dir) / ACCOUNT_KEY_FILE


def domain_key_path(cache_dir: str | Path, domain: str) -> Path:
    return Path(cache_dir) / (_normalize_domain(domain) + KEY_SUFFIX)


def cert_path(cache_dir: str | Path, domain: str) -> Path:
    return Path(cache_dir) / (_normalize_domain(domain) + CERT_SUFFIX)


# ─── Keys ─────────────────────────────────────────────────────────────────────


def load_private_key(path: Path) -> PrivateKey:
    """Load an EC or RSA private key from *path*.

    Raises FileNotFoundError when the file is absent so callers can tell
    "generate one" apart from CacheIOError (unreadable or not a usable key).
    """
    try:
        pem = path.read_bytes()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise CacheIOError(f"could not read {path}: {exc}") from exc

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CacheIOError(f"{path} does not contain a PEM private key: {exc}") from exc

    if not isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
        raise CacheIOError(f"{path} does not contain an EC or RSA private key")
    return key


def load_or_create_key(path: Path) -> PrivateKey:
    """
    Return the private key stored at *path*, generating a P-256 key first if
    the file does not exist.

    A freshly generated key is persisted (0o600, parent directory 0o700)
    before it is returned, so a crash never leaves a key in use that is not
    on disk.
    """
    path = Path(path)
    try:
        return load_private_key(path)
    except FileNotFoundError:
        pass

    logger.info("No key at %s, generating a new P-256 key", path)
    key = generate_ec_key()
    try:
        ensure_dir(path.parent)
        atomic_write_bytes(path, private_key_to_pem(key))
    except OSError as exc:
        raise CacheIOError(f"could not save key to {path}: {exc}") from exc
    return key


# ─── Certificates ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CachedCertificate:
    """A parsed certificate chain as stored on disk."""

    chain: List[x509.Certificate]
    pem: bytes
    not_before: datetime
    not_after: datetime

    @property
    def leaf(self) -> x509.Certificate:
        return self.chain[0]

    def renewal_due(self, renew_before: timedelta) -> datetime:
        """Return the point in time at which this certificate should be replaced."""
        return self.not_after - renew_before

    def needs_renewal(self, renew_before: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(tz=timezone.utc)
        return now >= self.renewal_due(renew_before)

    def matches_key(self, private_key: PrivateKey) -> bool:
        return public_key_matches(self.leaf, private_key)


def _not_before(cert: x509.Certificate) -> datetime:
    # cryptography >= 42 exposes timezone-aware accessors
    try:
        return cert.not_valid_before_utc
    except AttributeError:
        return cert.not_valid_before.replace(tzinfo=timezone.utc)


def _not_after(cert: x509.Certificate) -> datetime:
    try:
        return cert.not_valid_after_utc
    except AttributeError:
        return cert.not_valid_after.replace(tzinfo=timezone.utc)


def parse_chain(pem: bytes, source: str = "<memory>") -> CachedCertificate:
    """Parse a PEM chain (leaf first). Raises MalformedCertificateError."""
    try:
        chain = x509.load_pem_x509_certificates(pem)
    except ValueError as exc:
        raise MalformedCertificateError(f"{source} does not contain a certificate: {exc}") from exc
    if not chain:
        raise MalformedCertificateError(f"{source} does not contain a certificate")

    leaf = chain[0]
    return CachedCertificate(
        chain=chain,
        pem=pem,
        not_before=_not_before(leaf),
        not_after=_not_after(leaf),
    )


def load_certificate(path: Path) -> CachedCertificate:
    """
    Load the certificate chain cached at *path*.

    Raises CertificateNotFoundError if the file is absent (the signal to
    issue one), MalformedCertificateError if it does not parse, and
    CacheIOError for any other read failure.
    """
    path = Path(path)
    try:
        pem = path.read_bytes()
    except OSError as exc:
        if exc.errno == errno.ENOENT:
            raise CertificateNotFoundError(f"no certificate cached at {path}") from exc
        raise CacheIOError(f"could not read {path}: {exc}") from exc
    return parse_chain(pem, source=str(path))


def save_certificate(path: Path, chain_pem: bytes | str) -> CachedCertificate:
    """
    Validate *chain_pem* and atomically persist it to *path* (0o600).

    Returns the parsed chain so callers do not need to read it back.
    """
    if isinstance(chain_pem, str):
        chain_pem = chain_pem.encode("ascii")
    cached = parse_chain(chain_pem, source="issued certificate")
    try:
        atomic_write_bytes(Path(path), chain_pem)
    except OSError as exc:
        raise CacheIOError(f"could not save certificate to {path}: {exc}") from exc
    return cached
