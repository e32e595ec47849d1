"""Exception hierarchy for Registry client operations.

Every error carries an HTTP ``status_code`` so the API layer can translate it
into an ``HTTPException`` without knowing the concrete type, and an optional
``detail`` payload with the protocol-level information an operator needs to
diagnose a regulatory rejection.
"""

from typing import Any


class RentriError(Exception):
    """Base exception for Registry client operations."""

    status_code: int = 500

    def __init__(self, message: str, *, detail: Any = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        """Plain representation for API responses."""
        data: dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.detail is not None:
            data["detail"] = self.detail
        return data


class ConfigurationError(RentriError):
    """Missing certificate or signing material. Fatal, never retried."""

    status_code = 400


class CertificateMissing(ConfigurationError):
    """No active certificate for the organization and environment."""

    status_code = 404


class SigningConfigurationMissing(ConfigurationError):
    """Certificate, private key or issuer cannot be resolved for signing."""


class InvalidCredentials(RentriError):
    """Credential bundle could not be opened (wrong password or corrupt data)."""

    status_code = 400


class CertificateExpired(RentriError):
    """Certificate validity window has ended."""

    status_code = 400


class ValidationError(RentriError):
    """Payload fails the Registry's schema rules.

    ``errors`` holds every problem found, never only the first one.
    """

    status_code = 400

    def __init__(self, message: str, errors: list | None = None, **kwargs):
        super().__init__(message, detail=kwargs.pop("detail", errors), **kwargs)
        self.errors = list(errors or [])


class TransportError(RentriError):
    """Network failure or timeout. Carries no parsed response."""

    status_code = 500


class RegistryRejection(RentriError):
    """Response status outside 2xx and outside the acceptable set."""

    def __init__(self, message: str, response):
        super().__init__(
            message,
            detail={"status": response.status, "body": response.parsed_json or response.text},
            status_code=response.status,
        )
        self.response = response


class ProtocolViolation(RentriError):
    """The Registry answered successfully but broke its own contract."""

    status_code = 502


class MissingTransactionId(ProtocolViolation):
    """Accepted submission without a transaction identifier."""


class NotFoundError(RentriError):
    """Local entity does not exist."""

    status_code = 404


class RegistroAlreadyBound(RentriError):
    """Registro already carries a remote identifier."""

    status_code = 409


class BatchRejected(RentriError):
    """Push batch refused before any network call (empty, too large, unbound)."""

    status_code = 400


class PushFailed(RentriError):
    """Push submission failed after the retry policy was exhausted.

    ``status_code`` is the last HTTP status, or 500 for transport failures.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        detail: Any = None,
        attempts: int = 0,
        validation_errors: list | None = None,
    ):
        super().__init__(message, detail=detail, status_code=status_code)
        self.attempts = attempts
        self.validation_errors = list(validation_errors or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = self.attempts
        if self.validation_errors:
            data["validation_errors"] = self.validation_errors
        return data
