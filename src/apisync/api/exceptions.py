#!/usr/bin/env python3
"""Exception Hierarchy for the API-Sync engine.

This module provides a structured exception hierarchy for handling errors
across the remote client, queue processing, and database layers.

Design Principles:
    - All exceptions inherit from ApiSyncError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Queue-level conditions carry the mapping/item context needed for logs

Exception Hierarchy:
    ApiSyncError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── AuthenticationError (may be recoverable - refresh token)
    │   ├── TokenFetchError
    │   ├── TokenExpiredError
    │   ├── InvalidCredentialsError
    │   └── AuthUnavailableError
    ├── APIError (may be recoverable - retry)
    │   ├── RateLimitError
    │   ├── NotFoundError
    │   ├── ValidationError
    │   └── ServerError
    ├── NetworkError (recoverable - retry)
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── DatabaseError (may be recoverable)
    │   ├── ConnectionPoolError
    │   ├── TransactionError
    │   └── IntegrityError
    └── QueueError (queue processing)
        ├── EntityNotFoundError
        ├── MappingNotFoundError
        ├── QueueSuspendedError
        ├── ItemPermanentlyFailedError
        └── CircuitOpenError
"""
from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class ApiSyncError(Exception):
    """Base exception for all API-Sync errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "ENTITY_NOT_FOUND")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(ApiSyncError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.missing_keys = missing_keys or []


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(ApiSyncError):
    """Base class for authentication-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class TokenFetchError(AuthenticationError):
    """Raised when a token cannot be fetched from the OAuth server."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 1,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        details["attempts"] = attempts
        super().__init__(
            message,
            code="TOKEN_FETCH_ERROR",
            details=details,
            **kwargs,
        )


class TokenExpiredError(AuthenticationError):
    """Raised when the remote rejects the current token (HTTP 401)."""

    def __init__(self, message: str = "Access token has expired", **kwargs):
        super().__init__(message, code="TOKEN_EXPIRED", **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Raised when OAuth credentials are invalid."""

    def __init__(
        self,
        message: str = "Invalid client credentials",
        **kwargs,
    ):
        super().__init__(
            message,
            code="INVALID_CREDENTIALS",
            recoverable=False,
            **kwargs,
        )


class AuthUnavailableError(AuthenticationError):
    """Raised when no usable token is available for a push batch.

    The whole batch is suspended and no queue item is consumed.
    """

    def __init__(
        self,
        message: str = "No valid authentication token available",
        **kwargs,
    ):
        super().__init__(message, code="AUTH_UNAVAILABLE", **kwargs)


# ============================================
# API Errors
# ============================================

class APIError(ApiSyncError):
    """Base class for remote API response errors.

    Attributes:
        status_code: HTTP status code
        endpoint: API endpoint that was called
        response_body: Raw response body (may be truncated)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        kwargs.setdefault("recoverable", status_code in (429, 500, 502, 503, 504))
        kwargs.setdefault("code", f"API_ERROR_{status_code}")

        super().__init__(
            message,
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before retrying (from Retry-After header)
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
            **kwargs,
        )
        self.retry_after = retry_after or 60


class NotFoundError(APIError):
    """Raised when a remote resource is not found (HTTP 404)."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} '{resource_id}' not found"

        kwargs.setdefault("status_code", 404)
        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message,
            code="NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ValidationError(APIError):
    """Raised when the remote rejects a payload (HTTP 400/422)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 400)
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field

        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ServerError(APIError):
    """Raised when the remote returns a 5xx error."""

    def __init__(
        self,
        message: str = "Server error",
        **kwargs,
    ):
        kwargs.setdefault("status_code", 500)
        super().__init__(
            message,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


# ============================================
# Network Errors (Usually Recoverable)
# ============================================

class NetworkError(ApiSyncError):
    """Base class for network-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    """Raised when connection to the remote fails."""

    def __init__(
        self,
        message: str = "Failed to connect to server",
        host: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details=details,
            **kwargs,
        )


class TimeoutError(NetworkError):
    """Raised when a request times out."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Database Errors
# ============================================

class DatabaseError(ApiSyncError):
    """Base class for database-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionPoolError(DatabaseError):
    """Raised when the database connection pool is exhausted or unavailable."""

    def __init__(
        self,
        message: str = "Database connection pool error",
        **kwargs,
    ):
        super().__init__(message, code="CONNECTION_POOL_ERROR", **kwargs)


class TransactionError(DatabaseError):
    """Raised when a database transaction fails."""

    def __init__(
        self,
        message: str = "Database transaction failed",
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details=details,
            **kwargs,
        )


class IntegrityError(DatabaseError):
    """Raised when a database integrity constraint is violated.

    For mapped objects this signals that a concurrent worker created the
    same (mapping, entity) or (mapping, remote id) correlation first.
    """

    def __init__(
        self,
        message: str = "Database integrity error",
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if constraint:
            details["constraint"] = constraint
        super().__init__(
            message,
            code="INTEGRITY_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Queue Errors
# ============================================

class QueueError(ApiSyncError):
    """Base class for queue processing errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)


class EntityNotFoundError(QueueError):
    """Raised when a queue item references a local entity that no longer exists.

    Always a per-item failure. The item stays retryable until the failure
    ceiling removes it.

    Attributes:
        entity_type: Entity type id of the missing entity
        properties: Identifying properties used for the lookup
    """

    def __init__(
        self,
        entity_type: str,
        properties: dict[str, Any],
        **kwargs,
    ):
        props = ", ".join(f"{k}={v}" for k, v in properties.items())
        message = f"Entity not found. type: {entity_type} properties: {props}"
        details = kwargs.pop("details", {})
        details["entity_type"] = entity_type
        details["properties"] = properties
        super().__init__(
            message,
            code="ENTITY_NOT_FOUND",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.entity_type = entity_type
        self.properties = properties


class MappingNotFoundError(QueueError):
    """Raised when a queue item names a mapping that does not exist.

    Non-retryable: the item is removed on the first failure.
    """

    def __init__(self, mapping_name: str, **kwargs):
        details = kwargs.pop("details", {})
        details["mapping"] = mapping_name
        super().__init__(
            f"Mapping '{mapping_name}' not found",
            code="MAPPING_NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.mapping_name = mapping_name


class QueueSuspendedError(QueueError):
    """Raised by the drain loop when a worker signals that the queue is unhealthy.

    Attributes:
        queue_name: Queue that was being drained
        error: The error that triggered the suspend
    """

    def __init__(
        self,
        queue_name: str,
        error: Optional[Exception] = None,
        **kwargs,
    ):
        message = f"Queue '{queue_name}' suspended"
        if error:
            message = f"{message}: {error}"
        details = kwargs.pop("details", {})
        details["queue"] = queue_name
        super().__init__(
            message,
            code="QUEUE_SUSPENDED",
            details=details,
            cause=error,
            recoverable=True,
            **kwargs,
        )
        self.queue_name = queue_name
        self.error = error


class ItemPermanentlyFailedError(QueueError):
    """Surfaced when a queue item exceeds its failure ceiling and is dropped.

    Attributes:
        item_id: Id of the dropped item
        failures: Failure count at the time it was dropped
    """

    def __init__(
        self,
        item_id: Optional[int],
        failures: int,
        error: Optional[Exception] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["item_id"] = item_id
        details["failures"] = failures
        super().__init__(
            f"Permanently failed queue item {item_id} after {failures} failures",
            code="ITEM_PERMANENTLY_FAILED",
            details=details,
            cause=error,
            recoverable=False,
            **kwargs,
        )
        self.item_id = item_id
        self.failures = failures
        self.error = error


class CircuitOpenError(QueueError):
    """Raised when the circuit breaker is open and requests are being rejected.

    Attributes:
        reset_at: When the circuit breaker will attempt to close
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


# ============================================
# Exports
# ============================================

__all__ = [
    # Base
    "ApiSyncError",
    # Configuration
    "ConfigurationError",
    # Authentication
    "AuthenticationError",
    "TokenFetchError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "AuthUnavailableError",
    # API
    "APIError",
    "RateLimitError",
    "NotFoundError",
    "ValidationError",
    "ServerError",
    # Network
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    # Database
    "DatabaseError",
    "ConnectionPoolError",
    "TransactionError",
    "IntegrityError",
    # Queue
    "QueueError",
    "EntityNotFoundError",
    "MappingNotFoundError",
    "QueueSuspendedError",
    "ItemPermanentlyFailedError",
    "CircuitOpenError",
]
