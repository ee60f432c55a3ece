"""
Exception hierarchy shared by the manager, the provisioners and the cache.

Every failure raised out of a renewal attempt is an ``AutocertError`` so the
manager can report it through its error callback before re-raising.
"""
from __future__ import annotations


class AutocertError(Exception):
    """Root of all errors raised by this package."""


class ConfigurationError(AutocertError):
    """A required setting (email, TOS prompt, provisioner, domain) is missing."""


class AuthorityProtocolError(AutocertError):
    """The ACME server rejected or failed a registration, order, challenge or issuance."""


class ChallengeUnavailableError(AutocertError):
    """The ACME server did not offer a dns-01 challenge for the authorization."""


class ProvisionError(AutocertError):
    """The DNS backend could not create the challenge record."""


class DomainMismatchError(ProvisionError):
    """The record name is outside the zone managed by the provisioner."""


class UnsupportedRecordTypeError(ProvisionError):
    """Only TXT records can be provisioned."""


class PropagationTimeoutError(ProvisionError):
    """Not every authoritative nameserver served the record before the deadline."""

    def __init__(self, name: str, pending: list[str]) -> None:
        self.name = name
        self.pending = pending
        super().__init__(
            f"{name} did not propagate to all nameservers (still waiting on: {', '.join(pending)})"
        )


class CacheIOError(AutocertError):
    """A key or certificate in the cache directory could not be read or written."""


class MalformedCertificateError(CacheIOError):
    """The cached file exists but holds no parseable certificate chain."""


class NotFoundError(AutocertError):
    """The requested object does not exist. Callers treat this as already absent."""


class CertificateNotFoundError(NotFoundError):
    """No certificate file is cached for the domain."""


class RecordNotFoundError(NotFoundError):
    """No DNS record matched the name, type and value to remove."""


class RenewalCancelledError(AutocertError):
    """The stop event fired while a renewal was in progress."""


class NoCertificateError(AutocertError):
    """No certificate has been obtained yet."""
