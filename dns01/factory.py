"""
Provisioner selection.

The DNS backend is picked once, at configuration time, from DNS_PROVIDER.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from dns01.propagation import PropagationVerifier
from dns01.provisioner import Provisioner

if TYPE_CHECKING:
    from config import Settings


def make_verifier(settings: "Settings", default_nameservers) -> PropagationVerifier:
    return PropagationVerifier(
        settings.DNS_NAMESERVERS or list(default_nameservers),
        timeout=settings.DNS_PROPAGATION_TIMEOUT_SECONDS,
        interval=settings.DNS_CHECK_INTERVAL_SECONDS,
        settle_delay=settings.DNS_SETTLE_SECONDS,
    )


def make_provisioner(settings: Optional["Settings"] = None) -> Provisioner:
    """Instantiate and return the configured DNS provisioner.

    Reads the settings singleton at call time when none is passed.
    Raises ValueError for unknown DNS_PROVIDER values.
    """
    if settings is None:
        from config import settings  # late import to avoid loading .env at import time

    provider = settings.DNS_PROVIDER

    if provider == "google":
        from dns01.google_cloud import DEFAULT_NAMESERVERS, GoogleCloudDnsProvisioner

        return GoogleCloudDnsProvisioner(
            domain=settings.DNS_ZONE or settings.DOMAIN,
            managed_zone=settings.GOOGLE_CLOUD_DNS_ZONE_NAME,
            project_id=settings.GOOGLE_PROJECT_ID,
            credentials_path=settings.GOOGLE_APPLICATION_CREDENTIALS,
            ignore_propagation_errors=settings.DNS_IGNORE_PROPAGATION_ERRORS,
            ttl=settings.DNS_RECORD_TTL,
            verifier=make_verifier(settings, DEFAULT_NAMESERVERS),
        )
    elif provider == "digitalocean":
        from dns01.digitalocean import DEFAULT_NAMESERVERS, DigitalOceanProvisioner

        return DigitalOceanProvisioner(
            domain=settings.DNS_ZONE or settings.DOMAIN,
            token=settings.DIGITALOCEAN_TOKEN,
            token_file=settings.DIGITALOCEAN_TOKEN_FILE,
            ignore_propagation_errors=settings.DNS_IGNORE_PROPAGATION_ERRORS,
            ttl=settings.DNS_RECORD_TTL,
            verifier=make_verifier(settings, DEFAULT_NAMESERVERS),
        )
    else:
        raise ValueError(
            f"Unknown DNS_PROVIDER: {provider!r}. Must be one of: google, digitalocean"
        )
