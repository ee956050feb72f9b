"""Custom exceptions for the Page Vault MCP server.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Page errors (1xxx)
    PAGE_NOT_FOUND = 1001
    PAGE_TITLE_REQUIRED = 1002
    SLUG_NOT_FOUND = 1003

    # Block errors (2xxx)
    BLOCK_NOT_FOUND = 2001
    BLOCK_INVALID_PARENT = 2002
    BLOCK_INVALID_SORT = 2003

    # Link errors (3xxx)
    LINK_LABEL_REQUIRED = 3001
    LINK_TARGET_REQUIRED = 3002
    LINK_TERM_REQUIRED = 3003
    LINK_INVALID_SCOPE = 3004

    # Tag errors (4xxx)
    TAG_INVALID = 4001
    TAG_NOT_FOUND = 4002

    # Storage errors (5xxx)
    STORAGE_READ_FAILED = 5001
    STORAGE_WRITE_FAILED = 5002

    # Search errors (6xxx)
    SEARCH_FAILED = 6001

    # Configuration errors (7xxx)
    CONFIG_INVALID = 7001

    # Validation errors (8xxx)
    VALIDATION_FAILED = 8001
    INVALID_PAGE_TYPE = 8002
    INVALID_BLOCK_TYPE = 8003


class PageVaultError(Exception):
    """Base exception for all Page Vault errors.

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


class NotFoundError(PageVaultError):
    """Raised when a page, slug or block does not exist."""


class PageNotFoundError(NotFoundError):
    """Raised when a page cannot be found."""

    def __init__(self, page_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Page with ID '{page_id}' not found",
            code=ErrorCode.PAGE_NOT_FOUND,
            details={"page_id": page_id}
        )
        self.page_id = page_id


class SlugNotFoundError(NotFoundError):
    """Raised when no page carries the requested slug."""

    def __init__(self, slug: str):
        super().__init__(
            f"No page with slug '{slug}'",
            code=ErrorCode.SLUG_NOT_FOUND,
            details={"slug": slug}
        )
        self.slug = slug


class BlockNotFoundError(NotFoundError):
    """Raised when a block cannot be found."""

    def __init__(self, block_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Block with ID '{block_id}' not found",
            code=ErrorCode.BLOCK_NOT_FOUND,
            details={"block_id": block_id}
        )
        self.block_id = block_id


class ValidationError(PageVaultError):
    """Raised when caller input is invalid (bad enum value, empty text, bad target)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class InvalidPageTypeError(ValidationError):
    """Raised when a page type is outside the fixed set."""

    def __init__(self, value: Any, allowed: Optional[list] = None):
        allowed_str = f" (allowed: {', '.join(allowed)})" if allowed else ""
        super().__init__(
            f"Invalid page type: {value}{allowed_str}",
            field="type",
            value=value,
            code=ErrorCode.INVALID_PAGE_TYPE
        )


class InvalidBlockTypeError(ValidationError):
    """Raised when a block type is outside the known set."""

    def __init__(self, value: Any, allowed: Optional[list] = None):
        allowed_str = f" (allowed: {', '.join(allowed)})" if allowed else ""
        super().__init__(
            f"Invalid block type: {value}{allowed_str}",
            field="type",
            value=value,
            code=ErrorCode.INVALID_BLOCK_TYPE
        )


class TagError(PageVaultError):
    """Raised for tag-related errors."""

    def __init__(
        self,
        message: str,
        tag_name: Optional[str] = None,
        code: ErrorCode = ErrorCode.TAG_INVALID
    ):
        details = {}
        if tag_name:
            details["tag_name"] = tag_name

        super().__init__(message, code=code, details=details)
        self.tag_name = tag_name


class StorageError(PageVaultError):
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


class SearchError(PageVaultError):
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


class ConfigurationError(PageVaultError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key
