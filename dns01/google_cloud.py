"""
Google Cloud DNS provisioner (google-cloud-dns >= 0.34).

Records are managed as whole rrsets by the Cloud DNS API, so a challenge value
is merged into an existing ``_acme-challenge`` rrset rather than replacing it,
and unprovision rewrites the rrset without our value when others remain.
Concurrent challenges for the same name therefore never clobber each other.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence, Tuple

from autocert.errors import (
    DomainMismatchError,
    PropagationTimeoutError,
    ProvisionError,
    RecordNotFoundError,
)
from dns01.propagation import DEFAULT_CHECK_INTERVAL, DEFAULT_PROPAGATION_TIMEOUT, PropagationVerifier
from dns01.provisioner import (
    TXT,
    Provisioner,
    check_record_type,
    contains_value,
    normalize_name,
    relative_record_name,
    strip_quotes,
)

logger = logging.getLogger(__name__)

DEFAULT_NAMESERVERS = (
    "ns-cloud-b1.googledomains.com",
    "ns-cloud-b2.googledomains.com",
    "ns-cloud-b3.googledomains.com",
    "ns-cloud-b4.googledomains.com",
)
DEFAULT_SETTLE_DELAY = 10.0
DEFAULT_TTL = 60


def _make_client(project_id: str, credentials_path: str):
    try:
        from google.cloud import dns as gcp_dns
    except ImportError as exc:
        raise ImportError(
            "google-cloud-dns package is required for DNS_PROVIDER='google'. "
            "Install it with: pip install 'autocertdns[google]'"
        ) from exc

    if credentials_path:
        return gcp_dns.Client.from_service_account_json(credentials_path, project=project_id or None)
    return gcp_dns.Client(project=project_id or None)


def discover_managed_zone(client, domain: str) -> Tuple[str, str]:
    """
    Return ``(zone_name, dns_name)`` of the managed zone that owns *domain*.

    When several zones match (``example.com`` and ``dev.example.com``), the
    one with the longest DNS name wins.
    """
    domain = normalize_name(domain)
    best: Optional[Tuple[str, str]] = None
    for zone in client.list_zones():
        dns_name = normalize_name(zone.dns_name)
        if domain != dns_name and not domain.endswith("." + dns_name):
            continue
        if best is None or len(dns_name) > len(best[1]):
            best = (zone.name, dns_name)
    if best is None:
        raise DomainMismatchError(f"no Cloud DNS managed zone found for {domain!r}")
    return best


class GoogleCloudDnsProvisioner(Provisioner):
    """DNS-01 provisioner backed by a Google Cloud DNS managed zone."""

    def __init__(
        self,
        domain: str,
        managed_zone: str = "",
        project_id: str = "",
        credentials_path: str = "",
        client=None,
        nameservers: Sequence[str] = DEFAULT_NAMESERVERS,
        propagation_timeout: float = DEFAULT_PROPAGATION_TIMEOUT,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        ignore_propagation_errors: bool = False,
        ttl: int = DEFAULT_TTL,
        verifier: Optional[PropagationVerifier] = None,
    ) -> None:
        if client is None:
            client = _make_client(project_id, credentials_path)
        self._client = client

        if not managed_zone:
            managed_zone, domain = discover_managed_zone(client, domain)
            logger.info("Using Cloud DNS managed zone %s (%s)", managed_zone, domain)

        self.domain = normalize_name(domain)
        if not self.domain:
            raise ValueError("GoogleCloudDnsProvisioner requires the managed zone's domain")
        self.managed_zone = managed_zone
        self.ttl = ttl
        self.ignore_propagation_errors = ignore_propagation_errors
        self._zone = client.zone(managed_zone, self.domain + ".")

        if verifier is None and nameservers:
            verifier = PropagationVerifier(
                nameservers,
                timeout=propagation_timeout,
                interval=check_interval,
                settle_delay=settle_delay,
            )
        self._verifier = verifier

    # ── Provisioner ───────────────────────────────────────────────────────

    def provision(
        self,
        record_type: str,
        fqdn: str,
        value: str,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_record_type(record_type)
        relative_record_name(fqdn, self.domain)
        name = normalize_name(fqdn) + "."

        logger.info("Provisioning (type: %s, name: %s, value: %s)", record_type, name, value)
        try:
            existing = self._find_rrset(name)
            if existing is not None and contains_value(existing.rrdatas, value):
                logger.debug("TXT record %s already holds the value, skipping create", name)
            else:
                rrdatas = [f'"{value}"']
                changes = self._zone.changes()
                if existing is not None:
                    changes.delete_record_set(existing)
                    rrdatas = list(existing.rrdatas) + rrdatas
                changes.add_record_set(self._zone.resource_record_set(name, TXT, self.ttl, rrdatas))
                changes.create()
        except Exception as exc:
            raise ProvisionError(f"unable to provision {record_type} {name}: {exc}") from exc

        if self._verifier is None:
            return
        try:
            self._verifier.verify(name, value, stop_event)
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
        relative_record_name(fqdn, self.domain)
        name = normalize_name(fqdn) + "."

        try:
            existing = self._find_rrset(name)
        except Exception as exc:
            raise ProvisionError(f"could not list records for {name}: {exc}") from exc
        if existing is None or not contains_value(existing.rrdatas, value):
            raise RecordNotFoundError(f"no {record_type} record {name} with value {value}")

        remaining = [d for d in existing.rrdatas if strip_quotes(d) != value]
        logger.info("Unprovisioning (type: %s, name: %s, value: %s)", record_type, name, value)
        try:
            changes = self._zone.changes()
            changes.delete_record_set(existing)
            if remaining:
                changes.add_record_set(
                    self._zone.resource_record_set(name, TXT, existing.ttl, remaining)
                )
            changes.create()
        except Exception as exc:
            raise ProvisionError(f"unable to unprovision {record_type} {name}: {exc}") from exc

    # ── Internal ──────────────────────────────────────────────────────────

    def _find_rrset(self, name: str):
        wanted = normalize_name(name)
        for rrset in self._zone.list_resource_record_sets():
            if rrset.record_type == TXT and normalize_name(rrset.name) == wanted:
                return rrset
        return None
