"""
AgriTrust Exception Hierarchy

All exceptions inherit from AgriTrustError for easy catching.

    IntegrityError          evidence digest mismatch, forged signature
    ConfigurationError      bad percentages, shares, config, currency mix
    TransientIOError        collaborator timeout / connectivity, retryable
    StateTransitionError    operation not allowed in the record's state
    TransferError           a single value transfer failed (recorded, not thrown
                            out of a distribution run)
"""


class AgriTrustError(Exception):
    """Base exception for all AgriTrust errors"""

    retryable = False

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class IntegrityError(AgriTrustError):
    """Raised when a digest or signature check fails"""
    pass


class SignatureError(IntegrityError):
    """Raised when an audit record cannot be signed by the given identity"""
    pass


class ConfigurationError(AgriTrustError):
    """Raised for invalid percentages, shares, identities or config files"""
    pass


class CurrencyMismatchError(ConfigurationError):
    """Raised when arithmetic mixes two asset codes"""
    pass


class SeparationOfDutiesError(ConfigurationError):
    """Raised when the verifier is not independent of the operator"""
    pass


class TransientIOError(AgriTrustError):
    """Raised when a collaborator times out or is unreachable. Safe to retry."""

    retryable = True


class StateTransitionError(AgriTrustError):
    """Raised when an operation is not allowed in the record's current state"""
    pass


class DistributionAlreadyCompleteError(StateTransitionError):
    """Raised when distribute() is called on a completed settlement"""
    pass


class ConcurrentModificationError(StateTransitionError):
    """Raised when a stale settlement record is saved over a newer one"""
    pass


class DocumentStoreError(AgriTrustError):
    """Base for document store failures"""
    pass


class DocumentNotFoundError(DocumentStoreError):
    """Raised when an address is unknown to the document store"""
    pass


class QuotaExceededError(DocumentStoreError):
    """Raised when the document store refuses content for quota reasons"""
    pass


class AuditLedgerError(AgriTrustError):
    """Raised when the audit ledger cannot durably append a record"""
    pass


class PayloadTooLargeError(AuditLedgerError):
    """Raised when an audit payload exceeds the ledger bound"""
    pass


class TransferError(AgriTrustError):
    """Raised when a single value transfer fails"""
    pass


class InsufficientBalanceError(TransferError):
    """Raised when the source cannot cover the transfer amount"""
    pass


class DestinationNotProvisionedError(TransferError):
    """Raised when the destination cannot hold the asset (no trust line)"""
    pass
