"""
Exceptions raised by the certificate orchestrator.

Every exception carries a machine-readable ``error_code`` that is copied
into batch results and renewal logs, plus an optional domain and a
suggestion for the operator.
"""


class CertificateError(Exception):
    """Base exception for certificate operations."""

    error_code = "certificate_error"

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class CertificateNotFoundError(CertificateError):
    """Certificate not found."""

    error_code = "certificate_not_found"


class StorePersistenceError(CertificateError):
    """The certificate store could not be read or written."""

    error_code = "store_persistence_error"


class DomainNotFoundError(CertificateError):
    """Domain id is not in the registry."""

    error_code = "domain_not_found"


class DomainNotVerifiedError(CertificateError):
    """Domain exists but its ownership is not verified."""

    error_code = "domain_not_verified"


class FallbackGenerationError(CertificateError):
    """The self-signed fallback certificate could not be generated."""

    error_code = "fallback_generation_error"


def error_code_for(exc: BaseException) -> str:
    """Error code for any exception, typed or not."""
    return getattr(exc, "error_code", None) or "internal_error"


def error_message_for(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


def error_detail(exc: BaseException) -> dict:
    """HTTPException detail body for a typed error."""
    return {
        "error": error_code_for(exc),
        "message": error_message_for(exc),
        "domain": getattr(exc, "domain", None),
        "suggestion": getattr(exc, "suggestion", None),
    }
