"""Remote API and infrastructure modules.

This package provides the HTTP client, credential providers, database
helpers and the error hierarchy shared by the sync engine.

Classes:
    ApiSyncClient: Generic OData HTTP client with pagination, retry, and circuit breaker
    TokenManager: OAuth2 client-credentials token management with caching
    BasicAuthProvider: HTTP basic authentication credentials

Exceptions:
    ApiSyncError: Base exception for all API-Sync errors
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: Authentication failures
    APIError: API request failures
    NetworkError: Network connectivity issues
    DatabaseError: Database operation failures
    QueueError: Queue processing failures

Resilience:
    CircuitBreaker: Prevent cascading failures
"""
from .auth import BasicAuthProvider, TokenManager, create_token_provider, token_fingerprint
from .client import ApiSyncClient, PaginationConfig
from .database import (
    check_database_health,
    close_pool,
    create_pool,
    database_connection,
    database_transaction,
)
from .exceptions import (
    APIError,
    ApiSyncError,
    AuthenticationError,
    AuthUnavailableError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    ConnectionPoolError,
    DatabaseError,
    EntityNotFoundError,
    IntegrityError,
    InvalidCredentialsError,
    ItemPermanentlyFailedError,
    MappingNotFoundError,
    NetworkError,
    NotFoundError,
    QueueError,
    QueueSuspendedError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    TokenFetchError,
    TransactionError,
    ValidationError,
)
from .resilience import CircuitBreaker, CircuitState

__all__ = [
    # Client
    "ApiSyncClient",
    "PaginationConfig",
    # Auth
    "BasicAuthProvider",
    "TokenManager",
    "create_token_provider",
    "token_fingerprint",
    # Database
    "check_database_health",
    "close_pool",
    "create_pool",
    "database_connection",
    "database_transaction",
    # Exceptions
    "APIError",
    "ApiSyncError",
    "AuthenticationError",
    "AuthUnavailableError",
    "CircuitOpenError",
    "ConfigurationError",
    "ConnectionError",
    "ConnectionPoolError",
    "DatabaseError",
    "EntityNotFoundError",
    "IntegrityError",
    "InvalidCredentialsError",
    "ItemPermanentlyFailedError",
    "MappingNotFoundError",
    "NetworkError",
    "NotFoundError",
    "QueueError",
    "QueueSuspendedError",
    "RateLimitError",
    "ServerError",
    "TimeoutError",
    "TokenExpiredError",
    "TokenFetchError",
    "TransactionError",
    "ValidationError",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
]
