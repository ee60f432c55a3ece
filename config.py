"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from autocert.acme_session import LETS_ENCRYPT_STAGING_URL, LETS_ENCRYPT_URL


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (List[str])
    before field validators run, so a plain ``ns1.example.net,ns2.example.net``
    would raise SettingsError. Handing back the raw string lets the
    field validator split it on commas instead.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA ────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "custom"] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""
    ACME_EMAIL: str = ""
    ACME_TIMEOUT_SECONDS: float = 300.0
    ACME_INSECURE: bool = False    # Skip TLS verification (test CAs only)

    # ── Certificate ───────────────────────────────────────────────────────
    DOMAIN: str = ""
    CACHE_DIR: str = "certs"
    RENEW_BEFORE_DAYS: float = 5.0

    # ── DNS-01 provisioning ───────────────────────────────────────────────
    DNS_PROVIDER: Literal["google", "digitalocean"] = "google"
    # Zone apex the provider manages, e.g. example.com. Defaults to DOMAIN's
    # zone discovery (google) or DOMAIN itself (digitalocean).
    DNS_ZONE: str = ""
    # Empty = provider defaults
    DNS_NAMESERVERS: List[str] = []
    DNS_PROPAGATION_TIMEOUT_SECONDS: float = 60.0
    DNS_CHECK_INTERVAL_SECONDS: float = 0.1
    DNS_SETTLE_SECONDS: float = 10.0
    DNS_IGNORE_PROPAGATION_ERRORS: bool = False
    DNS_RECORD_TTL: int = 60

    # ── Google Cloud DNS ──────────────────────────────────────────────────
    GOOGLE_PROJECT_ID: str = ""
    GOOGLE_CLOUD_DNS_ZONE_NAME: str = ""
    GOOGLE_APPLICATION_CREDENTIALS: str = ""

    # ── DigitalOcean ──────────────────────────────────────────────────────
    DIGITALOCEAN_TOKEN: str = ""
    DIGITALOCEAN_TOKEN_FILE: str = ""

    # ── Logging ───────────────────────────────────────────────────────────
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("DNS_NAMESERVERS", mode="before")
    @classmethod
    def parse_nameservers(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(",") if ns.strip()]
        return v  # type: ignore[return-value]

    @field_validator("DOMAIN", "DNS_ZONE")
    @classmethod
    def strip_root_dot(cls, v: str) -> str:
        return v.strip().rstrip(".").lower()

    @field_validator("RENEW_BEFORE_DAYS")
    @classmethod
    def validate_renew_before(cls, v: float) -> float:
        if v < 0:
            raise ValueError("RENEW_BEFORE_DAYS must not be negative")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        _PRESETS = {
            "letsencrypt":         LETS_ENCRYPT_URL,
            "letsencrypt_staging": LETS_ENCRYPT_STAGING_URL,
        }
        if self.CA_PROVIDER in _PRESETS:
            self.ACME_DIRECTORY_URL = _PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self


# Module-level singleton: import and use everywhere.
settings = Settings()
