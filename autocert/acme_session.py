"""
Thin adapter over the ``acme`` library (ClientV2) for the dns-01 flow.

The manager never touches acme/josepy objects directly: it calls the handful
of operations below, and every library or transport failure comes back as an
AuthorityProtocolError.

RFC 8555 notes
--------------
* newAccount with an already-registered key answers 200 + Location, which
  the library raises as ConflictError. That is treated as success and the
  Location is bound as the account URL for subsequent kid-signed requests.
* The order carries the CSR up front (ACME v2 derives identifiers from it);
  finalization happens only after the authorization is valid.
"""
from __future__ import annotations

import datetime
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional, Tuple

import josepy as jose
import requests
from acme import challenges, client, errors, messages
from cryptography.hazmat.primitives.asymmetric import ec

from autocert.crypto import PrivateKey
from autocert.errors import AuthorityProtocolError, ChallengeUnavailableError, RenewalCancelledError

logger = logging.getLogger(__name__)

LETS_ENCRYPT_URL = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

USER_AGENT = "autocertdns/1.0"
DEFAULT_POLL_INTERVAL = 1


def account_jwk(key: PrivateKey) -> Tuple[jose.JWK, jose.JWASignature]:
    """Wrap an account key for josepy and pick the matching JWS algorithm."""
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return jose.JWKEC(key=key), jose.ES256
    return jose.JWKRSA(key=key), jose.RS256


@contextmanager
def _authority_errors(action: str) -> Generator[None, None, None]:
    try:
        yield
    except (errors.Error, requests.RequestException) as exc:
        raise AuthorityProtocolError(f"could not {action}: {exc}") from exc


class AcmeSession:
    """One account's conversation with an ACME directory."""

    def __init__(
        self,
        directory_url: str,
        account_key: PrivateKey,
        verify_ssl: bool = True,
        acme_client: Optional[client.ClientV2] = None,
    ) -> None:
        self.directory_url = directory_url
        self._key, alg = account_jwk(account_key)
        self._client = acme_client
        if self._client is None:
            self._net = client.ClientNetwork(
                self._key, alg=alg, verify_ssl=verify_ssl, user_agent=USER_AGENT
            )

    @property
    def acme(self) -> client.ClientV2:
        """The ClientV2, fetching the directory on first use."""
        if self._client is None:
            with _authority_errors(f"fetch ACME directory {self.directory_url}"):
                directory = client.ClientV2.get_directory(self.directory_url, self._net)
            self._client = client.ClientV2(directory, net=self._net)
        return self._client

    # ── Account ───────────────────────────────────────────────────────────

    def register(self, email: str, prompt: Callable[[str], bool]) -> str:
        """
        Register the account key, agreeing to the terms of service through
        *prompt*. Returns the account URL. Registering an existing key is
        not an error.
        """
        tos = self.acme.directory.meta.terms_of_service
        if tos and not prompt(tos):
            raise AuthorityProtocolError(f"terms of service {tos} were not accepted")

        registration = messages.NewRegistration.from_data(
            email=email, terms_of_service_agreed=True
        )
        try:
            with _authority_errors("register with ACME server"):
                regr = self.acme.new_account(registration)
        except AuthorityProtocolError as exc:
            if not isinstance(exc.__cause__, errors.ConflictError):
                raise
            location = exc.__cause__.location
            logger.info("ACME account already registered: %s", location)
            self.acme.net.account = messages.RegistrationResource(
                uri=location, body=messages.Registration()
            )
            return location

        logger.info("Registered ACME account: %s", regr.uri)
        return regr.uri

    # ── Orders & challenges ───────────────────────────────────────────────

    def new_order(self, csr_pem: bytes) -> messages.OrderResource:
        with _authority_errors("authorize with ACME server"):
            return self.acme.new_order(csr_pem)

    @staticmethod
    def select_dns01(
        orderr: messages.OrderResource,
    ) -> Tuple[messages.AuthorizationResource, messages.ChallengeBody]:
        """Return the (authorization, dns-01 challenge) pair offered for the order."""
        for authzr in orderr.authorizations:
            for challb in authzr.body.challenges:
                if isinstance(challb.chall, challenges.DNS01):
                    return authzr, challb
        raise ChallengeUnavailableError(
            "no dns-01 challenge found in challenges provided by the ACME server"
        )

    def dns01_record(self, challb: messages.ChallengeBody) -> str:
        """TXT value for *challb*: base64url(SHA-256(key authorization))."""
        return challb.chall.validation(self._key)

    def accept(self, challb: messages.ChallengeBody) -> None:
        response = challb.chall.response(self._key)
        with _authority_errors("accept ACME challenge"):
            self.acme.answer_challenge(challb, response)

    def wait_authorization(
        self,
        authzr: messages.AuthorizationResource,
        deadline: datetime.datetime,
        stop_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Poll *authzr* until it leaves ``pending``/``processing`` and return
        the terminal status name. Honours Retry-After between polls.
        """
        while True:
            with _authority_errors("wait for authorization from ACME server"):
                authzr, response = self.acme.poll(authzr)
            status = authzr.body.status
            if status not in (messages.STATUS_PENDING, messages.STATUS_PROCESSING):
                return status.name

            now = datetime.datetime.now()
            if now >= deadline:
                raise AuthorityProtocolError(
                    f"authorization {authzr.uri} still {status.name} at deadline"
                )
            retry_at = self.acme.retry_after(response, default=DEFAULT_POLL_INTERVAL)
            delay = max(0.0, min((retry_at - now).total_seconds(), (deadline - now).total_seconds()))
            if stop_event is not None:
                if stop_event.wait(delay):
                    raise RenewalCancelledError("cancelled while waiting for authorization")
            else:
                time.sleep(delay)

    def finalize(self, orderr: messages.OrderResource, deadline: datetime.datetime) -> str:
        """Finalize the order and return the issued full chain PEM."""
        with _authority_errors("create certificate"):
            finalized = self.acme.finalize_order(orderr, deadline)
        if not finalized.fullchain_pem:
            raise AuthorityProtocolError("ACME server returned an empty certificate chain")
        return finalized.fullchain_pem
