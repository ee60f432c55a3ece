"""
Certificate manager: obtains one certificate for one domain over ACME dns-01
and keeps it renewed for a TLS server.

Lifecycle
---------
  run()  ── load cached cert ──(usable)──────────────┐
            └─(missing / stale / broken)── _renew() ─┤
                                                     ▼
         background thread: wait until not_after - renew_before ── _renew() ── loop

_renew() holds the renewal mutex for the whole issuance, so two renewals never
interleave. The live certificate slot sits behind a ReadWriteLock that the
renewal only takes for the final swap: TLS handshakes calling
get_certificate() never wait on ACME or DNS traffic.

A failed background renewal is terminal (state FAILED, on_failure callback):
the loop does not retry against a possibly rate-limited CA on its own.
"""
from __future__ import annotations

import datetime
import enum
import logging
import ssl
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple

from cryptography import x509

from autocert.acme_session import LETS_ENCRYPT_URL, AcmeSession
from autocert.crypto import PrivateKey, create_csr
from autocert.errors import (
    AuthorityProtocolError,
    CacheIOError,
    CertificateNotFoundError,
    ConfigurationError,
    MalformedCertificateError,
    NoCertificateError,
    RecordNotFoundError,
    RenewalCancelledError,
)
from autocert.rwlock import ReadWriteLock
from dns01.provisioner import TXT, Provisioner, challenge_record_name, normalize_name
from storage.filesystem import (
    CachedCertificate,
    account_key_path,
    cert_path,
    domain_key_path,
    load_certificate,
    load_or_create_key,
    load_private_key,
    save_certificate,
)

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)

DEFAULT_RENEW_BEFORE = datetime.timedelta(days=5)
DEFAULT_ACME_TIMEOUT = datetime.timedelta(minutes=5)

LogFunc = Callable[..., Any]


def accept_tos(tos_url: str) -> bool:
    """TOS prompt that always agrees. Use it only if you have read the terms."""
    return True


class RenewalState(str, enum.Enum):
    IDLE = "idle"
    RENEWING = "renewing"
    FAILED = "failed"
    STOPPED = "stopped"


# ─── Configuration ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ManagerConfig:
    """
    Everything a Manager needs. Immutable once built.

    logf/errorf take printf-style arguments like the logging module;
    they default to this module's logger. on_failure receives the exception
    that stopped the background renewal loop.
    """

    domain: str = ""
    email: str = ""
    prompt: Optional[Callable[[str], bool]] = None
    provisioner: Optional[Provisioner] = None
    directory_url: str = LETS_ENCRYPT_URL
    cache_dir: str = "certs"
    renew_before: datetime.timedelta = DEFAULT_RENEW_BEFORE
    acme_timeout: datetime.timedelta = DEFAULT_ACME_TIMEOUT
    verify_ssl: bool = True
    logf: Optional[LogFunc] = None
    errorf: Optional[LogFunc] = None
    on_failure: Optional[Callable[[BaseException], None]] = None
    # (config, account_key) -> AcmeSession; replaced in tests
    session_factory: Optional[Callable[["ManagerConfig", PrivateKey], AcmeSession]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "domain", normalize_name(self.domain))

    def validate(self) -> None:
        """Raise ConfigurationError naming every required field that is unset."""
        missing = [
            name
            for name, value in (
                ("domain", self.domain or None),
                ("email", self.email or None),
                ("prompt", self.prompt),
                ("provisioner", self.provisioner),
            )
            if value is None
        ]
        if missing:
            raise ConfigurationError(f"missing required configuration: {', '.join(missing)}")
        if self.renew_before < datetime.timedelta(0):
            raise ConfigurationError("renew_before must not be negative")

    @classmethod
    def from_settings(
        cls, settings: "Settings", provisioner: Optional[Provisioner], **overrides: Any
    ) -> "ManagerConfig":
        values = dict(
            domain=settings.DOMAIN,
            email=settings.ACME_EMAIL,
            prompt=accept_tos,
            provisioner=provisioner,
            directory_url=settings.ACME_DIRECTORY_URL,
            cache_dir=settings.CACHE_DIR,
            renew_before=datetime.timedelta(days=settings.RENEW_BEFORE_DAYS),
            acme_timeout=datetime.timedelta(seconds=settings.ACME_TIMEOUT_SECONDS),
            verify_ssl=not settings.ACME_INSECURE,
        )
        values.update(overrides)
        return cls(**values)


def _default_session(config: ManagerConfig, account_key: PrivateKey) -> AcmeSession:
    return AcmeSession(config.directory_url, account_key, verify_ssl=config.verify_ssl)


# ─── Live certificate ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LiveCertificate:
    """The certificate currently served, with a ready-to-use server SSLContext."""

    domain: str
    chain: List[x509.Certificate]
    chain_pem: bytes
    private_key: PrivateKey
    not_before: datetime.datetime
    not_after: datetime.datetime
    ssl_context: ssl.SSLContext = field(repr=False)

    @property
    def leaf(self) -> x509.Certificate:
        return self.chain[0]


# ─── Manager ──────────────────────────────────────────────────────────────────


class Manager:
    """Issues, caches, serves and renews the certificate described by a ManagerConfig."""

    def __init__(self, config: ManagerConfig) -> None:
        self.config = config
        self._stop = threading.Event()
        self._started = False
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self._renew_lock = threading.Lock()
        self._live_lock = ReadWriteLock()
        self._live: Optional[LiveCertificate] = None
        self._next_renewal: Optional[datetime.datetime] = None
        self._state = RenewalState.IDLE
        self._session: Optional[AcmeSession] = None

    # ── Public ────────────────────────────────────────────────────────────

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Load or issue the certificate synchronously, then start the background
        renewal thread and return.

        Raises the error of the first pass if it produced no certificate.
        Setting *stop_event* (or calling stop()) ends the background thread
        and cancels a renewal in progress.
        """
        with self._start_lock:
            if self._started:
                raise RuntimeError("Manager.run() may only be called once")
            self._started = True
        if stop_event is not None:
            self._stop = stop_event

        self.obtain()

        self._thread = threading.Thread(
            target=self._renewal_loop,
            name=f"autocert-renew-{self.config.domain}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def get_certificate(self, server_name: Optional[str] = None) -> LiveCertificate:
        """
        Return the live certificate, stale or not. Never touches the network.

        *server_name* is the SNI name of the handshake; one Manager serves a
        single certificate, so it is only used for logging.
        """
        with self._live_lock.read_locked():
            live = self._live
        if live is None:
            raise NoCertificateError(
                f"no certificate for {self.config.domain} has been obtained yet"
            )
        if server_name and normalize_name(server_name) != live.domain:
            logger.debug("SNI %s does not match %s, serving it anyway", server_name, live.domain)
        return live

    def sni_callback(
        self, ssl_object: ssl.SSLObject, server_name: Optional[str], ssl_context: ssl.SSLContext
    ) -> Optional[int]:
        """``SSLContext.sni_callback`` hook: switch the handshake to the live certificate."""
        try:
            live = self.get_certificate(server_name)
        except NoCertificateError as exc:
            logger.warning("Rejecting TLS handshake: %s", exc)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        ssl_object.context = live.ssl_context
        return None

    @property
    def state(self) -> RenewalState:
        return self._state

    @property
    def next_renewal(self) -> Optional[datetime.datetime]:
        with self._live_lock.read_locked():
            return self._next_renewal

    def renewal_delay(self, now: Optional[datetime.datetime] = None) -> float:
        """Seconds until the live certificate enters its renewal window (never negative)."""
        due = self.next_renewal
        if due is None:
            return 0.0
        now = now or datetime.datetime.now(tz=datetime.timezone.utc)
        return max(0.0, (due - now).total_seconds())

    # ── Load / renew ──────────────────────────────────────────────────────

    def obtain(self) -> LiveCertificate:
        """Serve the cached certificate if still usable, else issue one. No background thread."""
        try:
            self.config.validate()
            cached = self._load_cached()
            if cached is not None:
                self._install(*cached)
        except Exception as exc:
            self._state = RenewalState.FAILED
            self._report(exc)
            raise
        if cached is None:
            self._renew()
        return self.get_certificate()

    def _load_cached(self) -> Optional[Tuple[CachedCertificate, PrivateKey]]:
        """
        Return the cached (certificate, key) pair if it can be served as is.

        None means "issue a fresh one": no certificate, an unparseable one,
        one that does not match the domain key, or one already inside the
        renewal window. Any other cache failure propagates.
        """
        cfg = self.config
        crt_file = cert_path(cfg.cache_dir, cfg.domain)
        try:
            cached = load_certificate(crt_file)
        except CertificateNotFoundError:
            self._logf("No cached certificate for %s", cfg.domain)
            return None
        except MalformedCertificateError as exc:
            self._logf("Ignoring cached certificate for %s: %s", cfg.domain, exc)
            return None

        try:
            key = load_private_key(domain_key_path(cfg.cache_dir, cfg.domain))
        except FileNotFoundError:
            self._logf("Cached certificate for %s has no key, reissuing", cfg.domain)
            return None
        if not cached.matches_key(key):
            self._logf("Cached certificate for %s does not match its key, reissuing", cfg.domain)
            return None
        if cached.needs_renewal(cfg.renew_before):
            self._logf(
                "Cached certificate for %s expires %s, inside the renewal window",
                cfg.domain, cached.not_after.isoformat(),
            )
            return None
        return cached, key

    def _renew(self) -> None:
        """Run the whole issuance sequence under the renewal mutex."""
        with self._renew_lock:
            self._state = RenewalState.RENEWING
            try:
                cached, key = self._issue()
                self._install(cached, key)
            except RenewalCancelledError as exc:
                self._state = RenewalState.STOPPED
                self._report(exc)
                raise
            except Exception as exc:
                self._state = RenewalState.FAILED
                self._report(exc)
                raise
            self._state = RenewalState.IDLE

    def _issue(self) -> Tuple[CachedCertificate, PrivateKey]:
        cfg = self.config
        cfg.validate()

        account_key = load_or_create_key(account_key_path(cfg.cache_dir))
        domain_key = load_or_create_key(domain_key_path(cfg.cache_dir, cfg.domain))
        session = self._acme_session(account_key)
        # the acme library compares its deadlines against naive local time
        deadline = datetime.datetime.now() + cfg.acme_timeout

        self._check_stopped()
        session.register(cfg.email, cfg.prompt)

        self._check_stopped()
        orderr = session.new_order(create_csr(domain_key, cfg.domain))
        authzr, challb = session.select_dns01(orderr)
        value = session.dns01_record(challb)
        fqdn = challenge_record_name(cfg.domain)

        self._check_stopped()
        self._logf("Provisioning dns-01 challenge %s for %s", fqdn, cfg.domain)
        try:
            cfg.provisioner.provision(TXT, fqdn, value, self._stop)
            self._check_stopped()
            session.accept(challb)
            status = session.wait_authorization(authzr, deadline, self._stop)
            if status != "valid":
                raise AuthorityProtocolError(
                    f"authorization for {cfg.domain} finished with status {status!r}"
                )
        finally:
            self._unprovision(fqdn, value)

        self._check_stopped()
        self._logf("Authorization for %s is valid, requesting certificate", cfg.domain)
        chain_pem = session.finalize(orderr, deadline)
        cached = save_certificate(cert_path(cfg.cache_dir, cfg.domain), chain_pem)
        self._logf("Issued certificate for %s, valid until %s", cfg.domain, cached.not_after.isoformat())
        return cached, domain_key

    def _unprovision(self, fqdn: str, value: str) -> None:
        """Best-effort removal of the challenge record. Never raises."""
        try:
            # no stop event: cleanup must run to completion even when cancelled
            self.config.provisioner.unprovision(TXT, fqdn, value)
        except RecordNotFoundError as exc:
            logger.debug("Challenge record already absent: %s", exc)
        except Exception as exc:
            self._logf("Failed to remove challenge record %s: %s", fqdn, exc)

    def _install(self, cached: CachedCertificate, key: PrivateKey) -> None:
        """Swap the live certificate and the next renewal deadline together."""
        cfg = self.config
        live = LiveCertificate(
            domain=cfg.domain,
            chain=cached.chain,
            chain_pem=cached.pem,
            private_key=key,
            not_before=cached.not_before,
            not_after=cached.not_after,
            ssl_context=self._server_context(),
        )
        with self._live_lock.write_locked():
            self._live = live
            self._next_renewal = cached.renewal_due(cfg.renew_before)
        self._logf(
            "Serving certificate for %s (expires %s, renewal due %s)",
            cfg.domain, cached.not_after.isoformat(), self._next_renewal.isoformat(),
        )

    def _server_context(self) -> ssl.SSLContext:
        cfg = self.config
        crt_file = cert_path(cfg.cache_dir, cfg.domain)
        key_file = domain_key_path(cfg.cache_dir, cfg.domain)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(str(crt_file), str(key_file))
        except OSError as exc:
            raise CacheIOError(f"could not load {crt_file} with {key_file}: {exc}") from exc
        return context

    # ── Background loop ───────────────────────────────────────────────────

    def _renewal_loop(self) -> None:
        stop = self._stop
        while True:
            delay = min(self.renewal_delay(), threading.TIMEOUT_MAX)
            logger.info(
                "Next renewal for %s in %s", self.config.domain, datetime.timedelta(seconds=int(delay))
            )
            if stop.wait(delay):
                break
            try:
                self._renew()
            except RenewalCancelledError:
                break
            except Exception as exc:
                # already reported by _renew; the loop ends here
                if self.config.on_failure is not None:
                    self.config.on_failure(exc)
                return
        self._state = RenewalState.STOPPED
        logger.info("Renewal loop for %s stopped", self.config.domain)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _acme_session(self, account_key: PrivateKey) -> AcmeSession:
        if self._session is None:
            factory = self.config.session_factory or _default_session
            self._session = factory(self.config, account_key)
        return self._session

    def _check_stopped(self) -> None:
        if self._stop.is_set():
            raise RenewalCancelledError(f"renewal for {self.config.domain} cancelled")

    def _logf(self, msg: str, *args: Any) -> None:
        (self.config.logf or logger.info)(msg, *args)

    def _report(self, exc: BaseException) -> None:
        msg = "autocert: renewal for %s failed: %s"
        if self.config.errorf is not None:
            self.config.errorf(msg, self.config.domain, exc)
        else:
            self._logf("ERROR: " + msg, self.config.domain, exc)
