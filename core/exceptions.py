"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used throughout the
spreadsheet reconciliation pipeline. Each exception carries context
information for debugging and for the sync log.

Exception Hierarchy:
    SyncException (base)
    ├── ExtractionError
    │   ├── SheetReadError
    │   └── CSVExtractionError
    ├── DatabaseError
    ├── EnumResolutionError
    ├── SyncInProgressError
    ├── RecordNotFoundError
    ├── ConflictError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (sheet, case id, batch, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(SyncException):
    """Base exception for row source failures."""
    pass


class SheetReadError(ExtractionError):
    """
    Exception raised when reading from the spreadsheet API fails.

    Context should include:
        - spreadsheet_id: The spreadsheet being read
        - range: The A1 range requested
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of retries attempted
    """
    pass


class CSVExtractionError(ExtractionError):
    """
    Exception raised when a CSV export cannot be read.

    Context should include:
        - file_path: Path to the CSV file
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class DatabaseError(SyncException):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, UPSERT, DELETE)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Sync Control Errors
# ============================================================================

class EnumResolutionError(SyncException):
    """Raised when an enum catalog entry can neither be found nor created."""
    pass


class SyncInProgressError(SyncException):
    """Raised when a sync run is requested while another one is running."""
    pass


class RecordNotFoundError(SyncException):
    """Raised when a requested record does not exist."""
    pass


class ConflictError(SyncException):
    """Raised when a record with the same natural key already exists."""
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, SheetReadError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, SheetReadError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError, SheetReadError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, SheetReadError):
    """Spreadsheet or range not found (HTTP 404)."""
    pass
