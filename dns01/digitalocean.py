"""
DigitalOcean DNS provisioner (REST API v2 over requests).

DigitalOcean stores each TXT value as its own record with a numeric id, so
unprovision looks up the id of the record whose name, type and data all
match and deletes only that one.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

import requests

from autocert.errors import (
    ConfigurationError,
    PropagationTimeoutError,
    ProvisionError,
    RecordNotFoundError,
)
from dns01.propagation import PropagationVerifier
from dns01.provisioner import (
    TXT,
    Provisioner,
    check_record_type,
    normalize_name,
    relative_record_name,
    strip_quotes,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.digitalocean.com/v2"
DEFAULT_NAMESERVERS = (
    "ns1.digitalocean.com",
    "ns2.digitalocean.com",
    "ns3.digitalocean.com",
)
DEFAULT_TTL = 60
_PAGE_SIZE = 200


def read_token_file(path: str) -> str:
    try:
        return Path(path).read_text().strip()
    except OSError as exc:
        raise ConfigurationError(f"could not read DigitalOcean token file {path}: {exc}") from exc


class DigitalOceanProvisioner(Provisioner):
    """DNS-01 provisioner backed by a DigitalOcean-hosted domain."""

    def __init__(
        self,
        domain: str,
        token: str = "",
        token_file: str = "",
        verifier: Optional[PropagationVerifier] = None,
        ignore_propagation_errors: bool = False,
        ttl: int = DEFAULT_TTL,
        timeout: int = 30,
        api_base: str = API_BASE,
    ) -> None:
        if not token and token_file:
            token = read_token_file(token_file)
        if not token:
            raise ConfigurationError("DigitalOcean provisioner requires an API token")

        self.domain = normalize_name(domain)
        if not self.domain:
            raise ConfigurationError("DigitalOcean provisioner requires a domain")
        self.ttl = ttl
        self.timeout = timeout
        self.ignore_propagation_errors = ignore_propagation_errors
        self._verifier = verifier
        self._records_url = f"{api_base}/domains/{self.domain}/records"

        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "User-Agent": "autocertdns/1.0",
        })

    # ── Provisioner ───────────────────────────────────────────────────────

    def provision(
        self,
        record_type: str,
        fqdn: str,
        value: str,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_record_type(record_type)
        name = relative_record_name(fqdn, self.domain)

        logger.info("Provisioning (type: %s, name: %s, value: %s)", record_type, fqdn, value)
        self._request(
            "POST",
            self._records_url,
            json={"type": TXT, "name": name, "data": value, "ttl": self.ttl},
        )

        if self._verifier is None:
            return
        try:
            self._verifier.verify(normalize_name(fqdn), value, stop_event)
        except PropagationTimeoutError as exc:
            if not self.ignore_propagation_errors:
                raise
            logger.warning("Continuing despite propagation failure: %s", exc)

    def unprovision(
        self,
        record_type: str,
        fqdn: str,
        value: str,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_record_type(record_type)
        name = relative_record_name(fqdn, self.domain)

        for record in self._records():
            if (
                record.get("type") != TXT
                or record.get("name") != name
                or strip_quotes(record.get("data", "")) != value
            ):
                continue
            logger.info("Unprovisioning (type: %s, name: %s, id: %s)", record_type, fqdn, record["id"])
            self._request("DELETE", f"{self._records_url}/{record['id']}")
            return

        raise RecordNotFoundError(f"no {record_type} record {fqdn} with value {value}")

    # ── Internal ──────────────────────────────────────────────────────────

    def _records(self) -> Iterator[dict]:
        """Yield every TXT record of the domain, following pagination links."""
        url: Optional[str] = self._records_url
        params: Optional[dict] = {"type": TXT, "per_page": _PAGE_SIZE}
        while url:
            body = self._request("GET", url, params=params).json()
            yield from body.get("domain_records", [])
            url = body.get("links", {}).get("pages", {}).get("next")
            params = None  # the next link already carries the query string

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ProvisionError(f"DigitalOcean API {method} {url} failed: {exc}") from exc
        return resp
