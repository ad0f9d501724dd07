"""Custom exceptions for Flowstate.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Most of these are recovered inside the
core (logged and turned into a no-op or an empty result); only
StoreUnavailableError is meant to stop the process.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORE_UNAVAILABLE = 4004
    SCHEMA_MIGRATION_FAILED = 4005
    FTS_CORRUPTED = 4007

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Legacy import errors (8xxx)
    MIGRATION_PARSE_FAILED = 8001
    MIGRATION_PERSIST_FAILED = 8002
    MIGRATION_ARCHIVE_FAILED = 8003

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class FlowstateError(Exception):
    """Base exception for all Flowstate errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class StorageError(FlowstateError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class StoreUnavailableError(StorageError):
    """Raised when the store failed to initialize or its schema could not be migrated.

    This is fatal: nothing else in the core may run against a store in
    this state.
    """

    def __init__(
        self,
        message: str,
        migration: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORE_UNAVAILABLE,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="migrate_schema" if migration else None,
            code=code,
            original_error=original_error
        )
        self.migration = migration
        if migration:
            self.details["migration"] = migration


class TransactionError(StorageError):
    """Raised when a single read or write transaction failed and was rolled back."""


class SearchError(FlowstateError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class MigrationFileError(FlowstateError):
    """Raised when a single legacy file could not be imported.

    Attributes:
        file_name: Name of the legacy file (no directory part)
        stage: Where the import failed: "parse", "persist" or "archive"
        original_error: The underlying exception if applicable
    """

    _STAGE_CODES = {
        "parse": ErrorCode.MIGRATION_PARSE_FAILED,
        "persist": ErrorCode.MIGRATION_PERSIST_FAILED,
        "archive": ErrorCode.MIGRATION_ARCHIVE_FAILED,
    }

    def __init__(
        self,
        message: str,
        file_name: str,
        stage: str = "parse",
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"file_name": file_name, "stage": stage}
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(
            message,
            code=self._STAGE_CODES.get(stage, ErrorCode.MIGRATION_PARSE_FAILED),
            details=details,
        )
        self.file_name = file_name
        self.stage = stage
        self.original_error = original_error
