"""
Configuration utilities and settings management.

Handles environment variables, the domain-set file, path resolution
and startup validation.
"""

import os
from pathlib import Path

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from certkeeper.core.errors import ConfigError
from certkeeper.models.certificate import DomainSetConfig


class Settings(BaseSettings):
    """Daemon settings loaded from environment variables."""

    # Monitoring API
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8089, alias="API_PORT")

    # Domain sets and storage
    domains_file: str = Field(
        default="/etc/certkeeper/domains.yml",
        alias="DOMAINS_FILE",
        description="YAML file listing the domain sets to manage",
    )
    cert_base_dir: str = Field(
        default="/etc/certkeeper/live",
        alias="CERT_BASE_DIR",
        description="Parent directory of the per-domain-set certificate directories",
    )
    state_db_path: str = Field(
        default="/var/lib/certkeeper/state.db",
        alias="STATE_DB_PATH",
        description="Path to SQLite database for certificate state and renewal history",
    )

    # ACME/Let's Encrypt Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_use_staging: bool = Field(
        default=False,
        alias="ACME_USE_STAGING",
        description="Use staging environment to avoid rate limits during testing",
    )
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email for ACME account registration"
    )
    acme_challenge_dir: str = Field(
        default="/var/www/.well-known/acme-challenge",
        alias="ACME_CHALLENGE_DIR",
        description="Directory served at /.well-known/acme-challenge for HTTP-01 challenges",
    )
    cert_key_size: int = Field(default=2048, alias="CERT_KEY_SIZE", description="RSA key size for issued certificates")

    # Renewal policy
    cert_renewal_days: int = Field(
        default=30, ge=1, alias="CERT_RENEWAL_DAYS", description="Days before expiry to trigger automatic renewal"
    )
    renewal_max_concurrency: int = Field(
        default=2, ge=1, alias="RENEWAL_MAX_CONCURRENCY", description="Maximum renewal attempts running at once"
    )
    renewal_check_interval_minutes: int = Field(
        default=60, ge=1, alias="RENEWAL_CHECK_INTERVAL_MINUTES", description="Minutes between scheduler ticks"
    )
    renewal_attempt_timeout: float = Field(
        default=300.0, gt=0, alias="RENEWAL_ATTEMPT_TIMEOUT", description="Seconds allowed for one CA exchange"
    )
    renewal_max_attempts: int = Field(
        default=5, ge=1, alias="RENEWAL_MAX_ATTEMPTS", description="Consecutive failures before marking degraded"
    )
    ca_rejected_max_attempts: int = Field(
        default=2,
        ge=1,
        alias="CA_REJECTED_MAX_ATTEMPTS",
        description="Consecutive CA rejections before marking degraded",
    )
    degraded_retry_hours: float = Field(
        default=24.0, gt=0, alias="DEGRADED_RETRY_HOURS", description="Retry cadence for degraded certificates"
    )
    backoff_base_seconds: float = Field(
        default=300.0, gt=0, alias="BACKOFF_BASE_SECONDS", description="Delay after the first failure"
    )
    backoff_max_seconds: float = Field(
        default=21600.0, gt=0, alias="BACKOFF_MAX_SECONDS", description="Upper bound for the backoff delay"
    )
    backoff_jitter: bool = Field(
        default=True, alias="BACKOFF_JITTER", description="Apply full jitter to backoff delays"
    )

    # Web server reload
    reload_method: str = Field(
        default="command", alias="RELOAD_METHOD", description="How to reload the web server: command, http, docker, none"
    )
    reload_command: str = Field(default="nginx -s reload", alias="RELOAD_COMMAND")
    reload_url: str = Field(default="", alias="RELOAD_URL", description="Admin endpoint to POST for reloads")
    reload_container_name: str = Field(
        default="nginx", alias="RELOAD_CONTAINER_NAME", description="Docker container running the web server"
    )
    reload_timeout: float = Field(default=30.0, gt=0, alias="RELOAD_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, alias="LOG_FILE")

    class Config:
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"

    @property
    def directory_url(self) -> str:
        """Get the ACME directory URL based on settings."""
        if self.acme_use_staging:
            return self.acme_staging_url
        return self.acme_directory_url


def load_settings(**overrides) -> Settings:
    """Build settings, turning validation problems into ConfigError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}", suggestion="Check the environment variables and .env file")


def load_domain_sets(path: str | Path) -> list[DomainSetConfig]:
    """
    Load the managed domain sets from a YAML file.

    Raises:
        ConfigError: file missing, not valid YAML, or a malformed domain list
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Domain file not found: {path}", suggestion="Set DOMAINS_FILE to an existing YAML file")

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Domain file {path} is not valid YAML: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("domain_sets"), list):
        raise ConfigError(
            f"Domain file {path} must contain a 'domain_sets' list",
            suggestion="Example: domain_sets: [{domains: [example.com, www.example.com]}]",
        )

    domain_sets = []
    seen = set()
    for index, entry in enumerate(data["domain_sets"]):
        if isinstance(entry, list):
            entry = {"domains": entry}
        try:
            domain_set = DomainSetConfig.model_validate(entry)
        except ValidationError as e:
            raise ConfigError(f"Domain set #{index + 1} in {path} is malformed: {e}")
        if domain_set.key in seen:
            raise ConfigError(f"Domain set {domain_set.key} is listed more than once in {path}")
        seen.add(domain_set.key)
        domain_sets.append(domain_set)

    return domain_sets


def ensure_writable_dir(path: str | Path) -> Path:
    """Create a directory if needed and check that it is writable."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create directory {path}: {e}")
    if not os.access(path, os.W_OK | os.X_OK):
        raise ConfigError(f"Directory {path} is not writable", suggestion="Fix ownership or permissions")
    return path


def resolve_cert_dir(settings: Settings, domain_set: DomainSetConfig) -> Path:
    """Get the certificate directory for a domain set."""
    if domain_set.directory:
        return Path(domain_set.directory)
    return Path(settings.cert_base_dir) / domain_set.primary_domain


def validate_environment(settings: Settings, domain_sets: list[DomainSetConfig]) -> None:
    """Check every path the daemon writes to before starting."""
    ensure_writable_dir(Path(settings.state_db_path).parent)
    ensure_writable_dir(settings.cert_base_dir)
    for domain_set in domain_sets:
        ensure_writable_dir(resolve_cert_dir(settings, domain_set))
    if settings.reload_method not in ("command", "http", "docker", "none"):
        raise ConfigError(f"Unknown RELOAD_METHOD '{settings.reload_method}'")
    if settings.reload_method == "http" and not settings.reload_url:
        raise ConfigError("RELOAD_METHOD=http requires RELOAD_URL")
    if settings.backoff_max_seconds < settings.backoff_base_seconds:
        raise ConfigError("BACKOFF_MAX_SECONDS must not be smaller than BACKOFF_BASE_SECONDS")
