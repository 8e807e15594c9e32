"""
Typed errors for credit and account operations.

Every error carries a stable code and a retryable flag so callers can
decide between showing a message and retrying.
"""

from typing import Optional

from .config import ERROR_CODES


class EntitlementError(Exception):
    """Base class for all entitlement failures."""

    code = "ENTITLEMENT_ERROR"
    retryable = False

    def __init__(self, message: Optional[str] = None, **details):
        self.details = details
        super().__init__(message or ERROR_CODES.get(self.code, self.code))

    def to_dict(self):
        """Convert to API response format."""
        return {
            "error_code": self.code,
            "error_message": str(self),
            "retryable": self.retryable,
            **self.details
        }


class InsufficientCredits(EntitlementError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}",
            required=required,
            available=available
        )


class AuthenticationRequired(EntitlementError):
    code = "AUTHENTICATION_REQUIRED"


class VerificationFailed(EntitlementError):
    code = "VERIFICATION_FAILED"

    def __init__(self, reason: str, vendor_transaction_id: Optional[str] = None):
        super().__init__(
            f"Purchase verification failed: {reason}",
            vendor_transaction_id=vendor_transaction_id
        )


class PurchasePending(EntitlementError):
    code = "PURCHASE_PENDING"
    retryable = True

    def __init__(self, vendor_transaction_id: str):
        super().__init__(vendor_transaction_id=vendor_transaction_id)


class NetworkError(EntitlementError):
    """Any remote call failure, including timeouts. Always retryable."""

    code = "NETWORK_ERROR"
    retryable = True

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        reason = str(cause) if cause and str(cause) else type(cause).__name__ if cause else "unknown"
        super().__init__(f"Remote call '{operation}' failed: {reason}", operation=operation)


class DuplicatePurchase(EntitlementError):
    code = "DUPLICATE_PURCHASE"

    def __init__(self, vendor_transaction_id: str):
        super().__init__(vendor_transaction_id=vendor_transaction_id)


class DuplicateLedgerEntry(EntitlementError):
    code = "DUPLICATE_LEDGER_ENTRY"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(entry_id=entry_id)


class AccountNotFound(EntitlementError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", account_id=account_id)


class AccountConflict(EntitlementError):
    code = "ACCOUNT_CONFLICT"
    retryable = True

    def __init__(self, installation_id: str):
        super().__init__(installation_id=installation_id)


class AuthError(EntitlementError):
    code = "AUTH_ERROR"


class InvalidCredentials(AuthError):
    code = "INVALID_CREDENTIALS"


class EmailAlreadyInUse(AuthError):
    code = "EMAIL_ALREADY_IN_USE"


class IdentityStoreError(EntitlementError):
    """Local storage is unreadable or unwritable. Never masked as zero credits."""

    code = "IDENTITY_STORE_UNAVAILABLE"


class GenerationFailed(EntitlementError):
    code = "GENERATION_FAILED"


class GenerationNotFound(EntitlementError):
    code = "GENERATION_NOT_FOUND"

    def __init__(self, generation_id: str):
        super().__init__(f"Generation not found: {generation_id}", generation_id=generation_id)
