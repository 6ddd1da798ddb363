#!/usr/bin/env python3
"""Generic HTTP Client for the remote API-Sync (OData) service.

This module provides a reusable, composable HTTP client that handles the
common concerns of talking to the remote service:

    - Bearer (OAuth2) or Basic authentication via an ITokenProvider
    - Automatic token refresh on 401 responses
    - Rate limit handling on 429 responses (honors Retry-After)
    - OData pagination following ``@odata.nextLink``
    - Connection pooling via shared aiohttp session
    - Circuit breaker for resilience against API outages
    - Comprehensive error handling with typed exceptions

Design Philosophy:
    This client knows HOW to talk to the remote service, but not WHAT to
    fetch. Object types, keys and field names belong to the mappings and
    to ODataTransport, which composes this client.

Usage:
    async with ApiSyncClient(token_provider) as client:
        # Single request
        data = await client.get("/Products", params={"$top": 50})

        # Paginated fetch (memory efficient)
        async for page in client.paginate("/Products", params={"$filter": "Price gt 10"}):
            for record in page:
                process(record)

        # Fetch everything (convenience)
        all_records = await client.fetch_all("/Products")
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiohttp

from ..sync.domain.ports import ITokenProvider
from .exceptions import (
    APIError,
    AuthUnavailableError,
    CircuitOpenError,
    ConfigurationError,
    ConnectionError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    ValidationError,
)
from .resilience import CircuitBreaker

logger = logging.getLogger(__name__)

# ============================================
# Configuration
# ============================================

@dataclass
class PaginationConfig:
    """Configuration for paginated OData requests.

    Attributes:
        page_size: Requested ``$top`` per page, None to let the server decide
        delay_between_pages: Seconds to wait between requests (rate limiting)
        max_pages: Safety limit to prevent infinite loops (None = no limit)
    """
    page_size: Optional[int] = None
    delay_between_pages: float = 0.0
    max_pages: Optional[int] = None


REQUEST_TIMEOUT_SECONDS = 60

# Sent at most once unless the connection was never established
NON_IDEMPOTENT_METHODS = frozenset({"POST"})


# ============================================
# The Client
# ============================================

class ApiSyncClient:
    """Async HTTP client for the remote API-Sync service.

    This client is designed to be used as an async context manager to ensure
    proper session lifecycle management:

        async with ApiSyncClient(token_provider) as client:
            data = await client.get("/Products('42')")

    Attributes:
        token_provider: ITokenProvider supplying the Authorization header
        base_url: Base URL of the OData service (e.g., "https://erp.example.com/odata")
    """

    def __init__(
        self,
        token_provider: ITokenProvider,
        base_url: Optional[str] = None,
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
    ):
        """Initialize the ApiSyncClient.

        Args:
            token_provider: Credential provider for the remote service
            base_url: API base URL. If not provided, reads from APISYNC_BASE_URL env var.
            enable_circuit_breaker: Enable circuit breaker for resilience
            circuit_failure_threshold: Failures before circuit opens
            circuit_timeout: Seconds before circuit attempts to close

        Raises:
            ConfigurationError: If base_url is not provided and APISYNC_BASE_URL is not set.
        """
        self.token_provider = token_provider
        self.base_url = (base_url or os.getenv("APISYNC_BASE_URL", "")).rstrip("/")

        if not self.base_url:
            raise ConfigurationError(
                "Base URL is required. Provide base_url parameter or set APISYNC_BASE_URL environment variable.",
                missing_keys=["APISYNC_BASE_URL"],
            )

        # Session is created in __aenter__, closed in __aexit__
        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name="apisync_api",
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "ApiSyncClient":
        """Enter async context: create the HTTP session."""
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(
                limit=10,
                limit_per_host=10,
            ),
            timeout=aiohttp.ClientTimeout(
                total=REQUEST_TIMEOUT_SECONDS,
                connect=10,
            ),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context: close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _get_auth_headers(self) -> dict[str, str]:
        """Get authorization headers with current token.

        Raises:
            AuthUnavailableError: If the provider has no token to offer
        """
        token = await self.token_provider.get_token()
        if not token:
            raise AuthUnavailableError()
        return {
            "Authorization": f"{self.token_provider.token_type} {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _url(self, endpoint: str) -> str:
        # nextLink values are absolute
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"
        return f"{self.base_url}{endpoint}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a single HTTP request (no retry logic).

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: Path relative to base_url, or an absolute nextLink URL
            params: Query parameters
            json_body: JSON request body (for POST/PATCH)

        Returns:
            Parsed JSON response as dict, {} for empty responses

        Raises:
            APIError: If response status is not 2xx
            RuntimeError: If called outside of async context manager
            ConnectionError: If connection to server fails
            TimeoutError: If request times out
        """
        if not self._session:
            raise RuntimeError(
                "ApiSyncClient must be used as async context manager: "
                "async with ApiSyncClient(...) as client:"
            )

        url = self._url(endpoint)
        headers = await self._get_auth_headers()

        if method in ("POST", "PATCH"):
            headers["Prefer"] = "return=representation"

        try:
            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )

                if response.status == 204:
                    return {}

                body = await response.text()
                if not body:
                    return {}
                return await response.json(content_type=None)

        except aiohttp.ClientConnectorError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=REQUEST_TIMEOUT_SECONDS,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> APIError:
        """Create appropriate APIError subclass based on status code."""
        if status == 401:
            return TokenExpiredError(
                "Access token expired or invalid",
                details={"endpoint": endpoint},
            )

        if status == 404:
            return NotFoundError(
                resource_type="Resource",
                resource_id=endpoint,
                endpoint=endpoint,
                response_body=response_body,
            )

        if status == 429:
            try:
                wait = int(retry_after) if retry_after else None
            except ValueError:
                wait = None
            return RateLimitError(
                f"Rate limit exceeded for {endpoint}",
                retry_after=wait,
                endpoint=endpoint,
                response_body=response_body,
            )

        if status == 400 or status == 422:
            return ValidationError(
                f"Validation failed for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                response_body=response_body,
            )

        if status >= 500:
            return ServerError(
                f"Server error ({status}) for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                response_body=response_body,
            )

        return APIError(
            f"{method} {endpoint} failed",
            status_code=status,
            endpoint=endpoint,
            method=method,
            response_body=response_body,
        )

    @staticmethod
    def _can_resend(method: str, error: Exception) -> bool:
        """True if resending cannot apply the request twice on the server."""
        return method not in NON_IDEMPOTENT_METHODS or isinstance(error, ConnectionError)

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        max_retries: int = 3,
    ) -> dict[str, Any]:
        """Make an HTTP request with automatic retry and circuit breaker.

        This method wraps _request() with resilience logic:
            - Circuit breaker: Fail fast if API is down
            - 401 Unauthorized: Invalidate token, refresh, retry
            - 429 Rate Limited: Wait for Retry-After, retry
            - 5xx Server Errors: Exponential backoff retry
            - Network errors: Exponential backoff retry
            - POST is not resent after it may have reached the server;
              only connect failures, 401 and 429 are retried

        Raises:
            CircuitOpenError: If circuit breaker is open
            TokenExpiredError: If the remote keeps answering 401
            APIError: If request fails after all retries
            NetworkError: If network error persists after retries
        """
        if self._circuit_breaker and not self._circuit_breaker.allow_request():
            raise CircuitOpenError(
                "Circuit breaker is open for the remote API",
                reset_at=self._circuit_breaker.reset_at,
                failure_count=self._circuit_breaker.failure_count,
            )

        last_error: Optional[Exception] = None
        backoff_delay = 1.0

        for attempt in range(1, max_retries + 1):
            try:
                result = await self._request(method, endpoint, params, json_body)

                if self._circuit_breaker:
                    await self._circuit_breaker.record_success()

                return result

            except TokenExpiredError as e:
                last_error = e
                logger.warning(f"Token rejected, refreshing (attempt {attempt})")
                self.token_provider.invalidate()
                continue

            except RateLimitError as e:
                last_error = e
                if attempt >= max_retries:
                    break
                logger.warning(
                    f"Rate limited, waiting {e.retry_after}s (attempt {attempt}/{max_retries})"
                )
                await asyncio.sleep(e.retry_after)
                continue

            except ServerError as e:
                last_error = e
                if attempt < max_retries and self._can_resend(method, e):
                    logger.warning(
                        f"Server error {e.status_code}, retrying in {backoff_delay}s "
                        f"(attempt {attempt}/{max_retries})"
                    )
                    await asyncio.sleep(backoff_delay)
                    backoff_delay = min(backoff_delay * 2, 60.0)
                    continue

                if self._circuit_breaker:
                    await self._circuit_breaker.record_failure(e)
                raise

            except NetworkError as e:
                last_error = e
                if attempt < max_retries and self._can_resend(method, e):
                    logger.warning(
                        f"Network error: {e}. Retrying in {backoff_delay}s "
                        f"(attempt {attempt}/{max_retries})"
                    )
                    await asyncio.sleep(backoff_delay)
                    backoff_delay = min(backoff_delay * 2, 60.0)
                    continue

                if self._circuit_breaker:
                    await self._circuit_breaker.record_failure(e)
                raise

            except (NotFoundError, ValidationError):
                # Non-retryable errors - fail immediately
                raise

            except APIError as e:
                if e.recoverable and attempt < max_retries and self._can_resend(method, e):
                    last_error = e
                    logger.warning(
                        f"API error (recoverable): {e}. Retrying in {backoff_delay}s"
                    )
                    await asyncio.sleep(backoff_delay)
                    backoff_delay = min(backoff_delay * 2, 60.0)
                    continue

                if self._circuit_breaker:
                    await self._circuit_breaker.record_failure(e)
                raise

        # Exhausted retries
        if self._circuit_breaker and last_error and not isinstance(last_error, TokenExpiredError):
            await self._circuit_breaker.record_failure(last_error)

        if last_error:
            raise last_error

        raise APIError(
            "Request failed after all retries",
            status_code=0,
            endpoint=endpoint,
            method=method,
        )

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        """Get circuit breaker status for monitoring."""
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a GET request."""
        return await self._request_with_retry("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: dict,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a POST request.

        Returns:
            The created record when the service honors ``Prefer: return=representation``
        """
        return await self._request_with_retry("POST", endpoint, params=params, json_body=json_body)

    async def patch(
        self,
        endpoint: str,
        json_body: dict,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a PATCH request."""
        return await self._request_with_retry("PATCH", endpoint, params=params, json_body=json_body)

    async def delete(
        self,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a DELETE request."""
        return await self._request_with_retry("DELETE", endpoint, params=params)

    # ----------------------------------------
    # Pagination Methods
    # ----------------------------------------

    async def paginate(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> AsyncIterator[list[dict]]:
        """Iterate through an OData collection page by page.

        The first request carries ``params``; later requests follow the
        server's ``@odata.nextLink`` verbatim until it is absent.

        Args:
            endpoint: Collection path (e.g., "/Products")
            config: Pagination configuration (page size, delay, etc.)
            params: OData query options ($select, $filter, $orderby, $top)

        Yields:
            List of records from each page

        Example:
            async for page in client.paginate("/Products"):
                for record in page:
                    print(record["Id"])
        """
        config = config or PaginationConfig()
        params = dict(params or {})
        if config.page_size and "$top" not in params:
            params["$top"] = config.page_size

        next_endpoint: Optional[str] = endpoint
        next_params: Optional[dict] = params
        pages_fetched = 0
        fetched_count = 0

        while next_endpoint:
            data = await self.get(next_endpoint, params=next_params)
            records = data.get("value", [])

            if records:
                yield records

            pages_fetched += 1
            fetched_count += len(records)
            logger.debug(f"Fetched page {pages_fetched} of {endpoint} ({fetched_count:,} records so far)")

            next_endpoint = data.get("@odata.nextLink")
            next_params = None

            if config.max_pages and pages_fetched >= config.max_pages:
                logger.info(f"Reached max_pages limit ({config.max_pages})")
                break

            if next_endpoint and config.delay_between_pages > 0:
                await asyncio.sleep(config.delay_between_pages)

        logger.info(f"Pagination complete: {fetched_count:,} records in {pages_fetched} pages")

    async def fetch_all(
        self,
        endpoint: str,
        config: Optional[PaginationConfig] = None,
        params: Optional[dict] = None,
    ) -> list[dict]:
        """Fetch all records from a paginated collection.

        For large collections, consider using paginate() instead to process
        records as they arrive.
        """
        all_records = []
        async for page in self.paginate(endpoint, config, params):
            all_records.extend(page)
        return all_records
