"""
Shared pytest fixtures.

No ACME server, DNS API or nameserver is contacted by the suite:

  FakeAcmeSession     stands in for autocert.acme_session.AcmeSession and
                      "issues" real certificates for the CSR it receives,
                      signed by a throwaway CA key.
  RecordingProvisioner records every provision/unprovision call and can be
                      told to fail either one.
"""
from __future__ import annotations

import datetime
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from autocert.crypto import generate_ec_key
from autocert.errors import AuthorityProtocolError, ChallengeUnavailableError, RenewalCancelledError
from autocert.manager import ManagerConfig, accept_tos
from dns01.provisioner import Provisioner

DOMAIN = "example.test"
CHALLENGE_VALUE = "dns01-token-value"

_CA_KEY = generate_ec_key()
_CA_NAME = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


# ─── Certificate helpers ──────────────────────────────────────────────────────


def make_certificate(private_key, domain: str = DOMAIN,
                     not_after: Optional[datetime.datetime] = None,
                     not_before: Optional[datetime.datetime] = None) -> bytes:
    """Return a PEM certificate for *private_key*'s public key, signed by the test CA."""
    now = utcnow()
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .issuer_name(_CA_NAME)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - datetime.timedelta(days=1))
        .not_valid_after(not_after or now + datetime.timedelta(days=90))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(_CA_KEY, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def issue_from_csr(csr_pem: bytes, lifetime: datetime.timedelta) -> bytes:
    """Sign *csr_pem* the way a CA would: same subject, same public key."""
    csr = x509.load_pem_x509_csr(csr_pem)
    now = utcnow()
    cert = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(_CA_NAME)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + lifetime)
        .sign(_CA_KEY, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


# ─── Fakes ────────────────────────────────────────────────────────────────────


class FakeAcmeSession:
    """In-memory AcmeSession: records the call sequence, issues from the CSR."""

    def __init__(self, lifetime: datetime.timedelta = datetime.timedelta(days=90)) -> None:
        self.lifetime = lifetime
        self.calls: List[str] = []
        self.status = "valid"
        self.offer_dns01 = True
        self.register_error: Optional[Exception] = None
        # finalize fails once it has succeeded this many times
        self.finalize_successes: Optional[int] = None
        # called from inside wait_authorization, e.g. to block or cancel
        self.on_wait: Optional[Callable[[], None]] = None
        self.csrs: List[bytes] = []
        self._finalized = 0
        self._lock = threading.Lock()

    def register(self, email, prompt):
        self.calls.append("register")
        if self.register_error is not None:
            raise self.register_error
        return "https://ca.invalid/acme/acct/1"

    def new_order(self, csr_pem):
        self.calls.append("new_order")
        self.csrs.append(csr_pem)
        return csr_pem

    def select_dns01(self, orderr):
        self.calls.append("select_dns01")
        if not self.offer_dns01:
            raise ChallengeUnavailableError("no dns-01 challenge offered")
        return "authz", "challb"

    def dns01_record(self, challb):
        return CHALLENGE_VALUE

    def accept(self, challb):
        self.calls.append("accept")

    def wait_authorization(self, authzr, deadline, stop_event=None):
        self.calls.append("wait_authorization")
        if self.on_wait is not None:
            self.on_wait()
        if stop_event is not None and stop_event.is_set():
            raise RenewalCancelledError("cancelled while waiting for authorization")
        return self.status

    def finalize(self, orderr, deadline):
        self.calls.append("finalize")
        with self._lock:
            if self.finalize_successes is not None and self._finalized >= self.finalize_successes:
                raise AuthorityProtocolError("could not create certificate: rateLimited")
            self._finalized += 1
        return issue_from_csr(orderr, self.lifetime).decode("ascii")


class RecordingProvisioner(Provisioner):
    """Provisioner that only records what it was asked to do."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.provision_error: Optional[Exception] = None
        self.unprovision_error: Optional[Exception] = None
        self.on_provision: Optional[Callable[[], None]] = None

    def provision(self, record_type, fqdn, value, stop_event=None):
        self.calls.append(("provision", record_type, fqdn, value))
        if self.on_provision is not None:
            self.on_provision()
        if self.provision_error is not None:
            raise self.provision_error

    def unprovision(self, record_type, fqdn, value, stop_event=None):
        self.calls.append(("unprovision", record_type, fqdn, value))
        if self.unprovision_error is not None:
            raise self.unprovision_error

    def count(self, action: str) -> int:
        return sum(1 for call in self.calls if call[0] == action)


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "certs"


@pytest.fixture
def fake_session() -> FakeAcmeSession:
    return FakeAcmeSession()


@pytest.fixture
def provisioner() -> RecordingProvisioner:
    return RecordingProvisioner()


@pytest.fixture
def make_config(cache_dir, fake_session, provisioner):
    """Factory for a ManagerConfig wired to the fakes; keyword args override fields."""

    def _build(**overrides) -> ManagerConfig:
        values = dict(
            domain=DOMAIN,
            email="ops@example.test",
            prompt=accept_tos,
            provisioner=provisioner,
            directory_url="https://ca.invalid/directory",
            cache_dir=str(cache_dir),
            session_factory=lambda config, account_key: fake_session,
        )
        values.update(overrides)
        return ManagerConfig(**values)

    return _build
