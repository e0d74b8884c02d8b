"""
Core utilities and configuration for the survey sync backend.

This package provides foundational components used throughout the service:

Modules:
    config: Application configuration and environment variable management
    database: Engine/session factories (SQLite test tweaks included)
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    sanitizer: Client-safe error messages

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import SheetReadError, NetworkError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "build_engine",
    "build_session_maker",
    "setup_logging",
    "sanitize_error",
    # Exceptions
    "SyncException",
    "ExtractionError",
    "SheetReadError",
    "CSVExtractionError",
    "DatabaseError",
    "EnumResolutionError",
    "SyncInProgressError",
    "RecordNotFoundError",
    "ConflictError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
