"""Automatic ACME certificates over the dns-01 challenge."""
from autocert.errors import AutocertError, NoCertificateError
from autocert.manager import (
    DEFAULT_RENEW_BEFORE,
    LiveCertificate,
    Manager,
    ManagerConfig,
    RenewalState,
    accept_tos,
)

__all__ = [
    "DEFAULT_RENEW_BEFORE",
    "AutocertError",
    "LiveCertificate",
    "Manager",
    "ManagerConfig",
    "NoCertificateError",
    "RenewalState",
    "accept_tos",
]
