"""
Exception taxonomy for the renewal daemon.

ConfigError aborts startup. Every other error is recovered by the
scheduler and surfaced through the result reporter.
"""

from enum import Enum


class CertkeeperError(Exception):
    """Base exception for certkeeper operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ConfigError(CertkeeperError):
    """Invalid configuration. Fatal at startup."""

    pass


class FailureKind(str, Enum):
    """Why a renewal attempt failed."""

    VALIDATION_FAILED = "validation_failed"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    CA_REJECTED = "ca_rejected"
    INSTALL_ERROR = "install_error"


class AcmeError(CertkeeperError):
    """The CA exchange failed. Retried according to the backoff policy."""

    def __init__(self, kind: FailureKind, message: str, suggestion: str = None):
        self.kind = FailureKind(kind)
        super().__init__(message, suggestion)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class InstallError(CertkeeperError):
    """Writing or renaming certificate files failed. Nothing was partially applied."""

    kind = FailureKind.INSTALL_ERROR


class ReloadError(CertkeeperError):
    """The web server did not accept the reload signal. The new certificate stays installed."""

    pass
