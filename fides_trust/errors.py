# fides_trust/errors.py
"""Custom exception classes for the trust & credential engine."""

from typing import Optional


class FidesTrustError(Exception):
    """Base class for engine errors."""
    def __init__(self, message: str, error_code: str = "TrustError"):
        self.message = message
        self.error_code = error_code
        super().__init__(f"[{error_code}] {message}")

class NotFoundError(FidesTrustError):
    """Unknown DID, issuer, credential, blob or token."""
    def __init__(self, message: str):
        super().__init__(message, error_code="NotFound")

class MalformedInputError(FidesTrustError):
    """Input that cannot be parsed or fails syntax checks."""
    def __init__(self, message: str):
        super().__init__(message, error_code="MalformedInput")

class InvalidKeyFormatError(MalformedInputError):
    """Error when a key is present but of the wrong type or shape."""
    def __init__(self, message: str):
        super().__init__(message)
        self.error_code = "InvalidKeyFormat"

class VerificationFailedError(FidesTrustError):
    """A document, signature or temporal check did not pass."""
    def __init__(self, message: str):
        super().__init__(message, error_code="VerificationFailed")

class RevokedError(FidesTrustError):
    """The credential's status-list bit is set."""
    def __init__(self, message: str = "Credential has been revoked"):
        super().__init__(message, error_code="Revoked")

class NotAllowlistedError(FidesTrustError):
    """A supplier may not publish events for a product."""
    def __init__(
        self,
        message: str,
        product_id: Optional[str] = None,
        supplier_did: Optional[str] = None,
        manufacturer_did: Optional[str] = None,
    ):
        super().__init__(message, error_code="NotAllowlisted")
        self.product_id = product_id
        self.supplier_did = supplier_did
        self.manufacturer_did = manufacturer_did

class StorageUnavailableError(FidesTrustError):
    """Backing store could not be read or written."""
    def __init__(self, message: str):
        super().__init__(message, error_code="StorageUnavailable")

class StatusListFullError(StorageUnavailableError):
    """No free index left in an issuer's status list."""
    def __init__(self, message: str):
        super().__init__(message)
        self.error_code = "StatusListFull"

class StatusListConflictError(StorageUnavailableError):
    """The status list pointer moved between read and write."""
    def __init__(self, message: str):
        super().__init__(message)
        self.error_code = "StatusListConflict"

class ConfigurationMissingError(FidesTrustError):
    """A required setting or backend is not configured."""
    def __init__(self, message: str):
        super().__init__(message, error_code="ConfigurationMissing")
