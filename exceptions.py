"""
Unified exception hierarchy for the finance tracker.

This module defines the exception hierarchy with FinanceAppError as the base
exception, so data-access actions can catch one type at their boundary while
the encryption core raises precise subclasses for missing keys, failed
decryption and lost balance updates.
"""

from typing import Optional


class FinanceAppError(Exception):
    """
    Base exception class for all finance tracker errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
        original_error: Optional original exception that caused this error
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        """
        Initialize FinanceAppError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} ({detail_str})"
        return msg


class ConfigError(FinanceAppError):
    """Raised when configuration loading or validation fails."""
    pass


class DatabaseError(FinanceAppError):
    """Raised when database operations fail."""
    pass


class RecordNotFoundError(DatabaseError):
    """Raised when a row owned by the user does not exist."""
    pass


class EncryptionError(FinanceAppError):
    """Base error for encryption failures."""
    pass


class EncryptionKeyError(EncryptionError):
    """Raised when a user encryption key cannot be created or loaded."""
    pass


class KeyNotFoundError(EncryptionKeyError):
    """Raised when no key row exists for a user."""
    pass


class DuplicateKeyError(EncryptionKeyError):
    """Raised when creating a key for a user who already has one."""
    pass


class KeyUnavailableError(EncryptionKeyError):
    """Raised when a missing key could not be provisioned."""
    pass


class DecryptionError(EncryptionError):
    """Raised when ciphertext is malformed, tampered with or under another key."""
    pass


class AccountError(FinanceAppError):
    """Raised when account management operations fail."""
    pass


class AccountNotFoundError(AccountError):
    """Raised when a balance lookup targets a missing account."""
    pass


class ConcurrentUpdateError(AccountError):
    """Raised when a balance changed between read and compare-and-swap write."""
    pass


class TransactionError(FinanceAppError):
    """Raised when transaction posting fails."""
    pass


class LoanError(FinanceAppError):
    """Raised when loan management operations fail."""
    pass


class RecurringTransactionError(FinanceAppError):
    """Raised when recurring transaction scheduling fails."""
    pass
