"""
DNS-01 challenge provisioning contract.

A provisioner creates and removes the ``_acme-challenge.<domain>`` TXT record
for the manager. Concrete backends (Google Cloud DNS, DigitalOcean) implement
:class:`Provisioner`; the manager only ever talks to this interface.

Contract:
  provision(record_type, fqdn, value)
      Create the record. Returning normally means "safe to ask the CA to
      validate now", so backends that verify propagation do it before
      returning.
  unprovision(record_type, fqdn, value)
      Remove exactly the record matching name, type and value. Raises
      RecordNotFoundError when nothing matched.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from autocert.errors import DomainMismatchError, UnsupportedRecordTypeError

ACME_CHALLENGE_PREFIX = "_acme-challenge."
TXT = "TXT"


class Provisioner(ABC):
    """Abstract base for DNS-01 challenge record management."""

    @abstractmethod
    def provision(
        self,
        record_type: str,
        fqdn: str,
        value: str,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Create a *record_type* record at *fqdn* holding *value*."""

    @abstractmethod
    def unprovision(
        self,
        record_type: str,
        fqdn: str,
        value: str,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Delete the *record_type* record at *fqdn* whose value is *value*."""


# ─── Shared helpers ───────────────────────────────────────────────────────────


def challenge_record_name(domain: str) -> str:
    """Return the fully qualified TXT record name for *domain*'s dns-01 challenge."""
    return ACME_CHALLENGE_PREFIX + domain.rstrip(".")


def normalize_name(name: str) -> str:
    """Lower-case and drop the trailing root dot."""
    return name.strip().rstrip(".").lower()


def check_record_type(record_type: str) -> None:
    if record_type != TXT:
        raise UnsupportedRecordTypeError(
            f"only TXT records are supported, got {record_type!r}"
        )


def relative_record_name(fqdn: str, zone: str) -> str:
    """
    Return *fqdn* relative to *zone*.

    ``_acme-challenge.example.test`` in zone ``test`` gives
    ``_acme-challenge.example``. Raises DomainMismatchError when *fqdn* is not
    strictly below *zone*.
    """
    name = normalize_name(fqdn)
    zone = normalize_name(zone)
    suffix = "." + zone
    if zone and name == zone:
        raise DomainMismatchError(f"{fqdn!r} has an empty name within zone {zone!r}")
    if not zone or not name.endswith(suffix):
        raise DomainMismatchError(f"{fqdn!r} is not within managed zone {zone!r}")
    return name[: -len(suffix)]


def strip_quotes(value: str) -> str:
    """TXT data may come back wrapped in double quotes; compare without them."""
    return value.strip('"')


def contains_value(values: Iterable[str], value: str) -> bool:
    return any(strip_quotes(v) == value for v in values)
