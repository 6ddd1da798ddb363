#!/usr/bin/env python3
"""Token providers for the remote API-Sync service.

Two providers implement ITokenProvider:

    - TokenManager: OAuth2 client credentials grant with in-memory caching,
      a dynamic expiration buffer and serialized refresh
    - BasicAuthProvider: static HTTP basic credentials

Queue processors only ever ask "is there a usable token right now?"; the
HTTP client asks for the header value. Neither ever logs a raw token, only
its SHA-256 prefix.

Example:
    >>> manager = TokenManager()
    >>> token = await manager.get_token()
"""
import asyncio
import base64
import hashlib
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
from dotenv import load_dotenv

from ..sync.domain.ports import ITokenProvider
from .exceptions import (
    ConfigurationError,
    ConnectionError,
    InvalidCredentialsError,
    NetworkError,
    TimeoutError,
    TokenFetchError,
)

load_dotenv()

logger = logging.getLogger(__name__)


def token_fingerprint(token: str) -> str:
    """Safe identifier for logging a token (SHA-256 hash, first 8 chars)."""
    return hashlib.sha256(token.encode()).hexdigest()[:8]


@dataclass
class CachedToken:
    """Container for a cached OAuth2 access token.

    Attributes:
        access_token: The OAuth2 bearer token string.
        expires_at: Unix timestamp when the token expires.
        token_type: Token type, typically "Bearer".
        expires_in: Original TTL in seconds (for dynamic buffer calculation).
    """
    access_token: str
    expires_at: float
    token_type: Optional[str] = "Bearer"
    expires_in: int = 3600

    MAX_BUFFER_SECONDS = 300
    MIN_BUFFER_SECONDS = 30

    @property
    def token_id(self) -> str:
        return token_fingerprint(self.access_token)

    @property
    def _buffer_seconds(self) -> float:
        """10% of TTL clamped to [MIN, MAX], plus ±10% jitter."""
        base_buffer = self.expires_in * 0.1
        buffer = max(self.MIN_BUFFER_SECONDS, min(base_buffer, self.MAX_BUFFER_SECONDS))
        jitter = buffer * random.uniform(-0.1, 0.1)
        return buffer + jitter

    @property
    def is_expired(self) -> bool:
        return time.time() >= (self.expires_at - self._buffer_seconds)

    @property
    def time_remaining(self) -> float:
        return max(0, self.expires_at - time.time())


class TokenManager(ITokenProvider):
    """OAuth2 client-credentials token provider with automatic refresh.

    Attributes:
        client_id: OAuth2 client ID (from env: APISYNC_CLIENT_ID).
        client_secret: OAuth2 client secret (from env: APISYNC_CLIENT_SECRET).
        token_url: OAuth2 token endpoint (from env: APISYNC_TOKEN_URL).
        scope: Optional OAuth2 scope (from env: APISYNC_TOKEN_SCOPE).

    Concurrent callers share one refresh: the fetch is serialized with an
    asyncio.Lock and the cache is re-checked after acquiring it.
    """

    token_type = "Bearer"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        scope: Optional[str] = None,
    ):
        self.client_id = client_id or os.getenv("APISYNC_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("APISYNC_CLIENT_SECRET")
        self.token_url = token_url or os.getenv("APISYNC_TOKEN_URL")
        self.scope = scope or os.getenv("APISYNC_TOKEN_SCOPE")

        missing = []
        if not self.client_id:
            missing.append("APISYNC_CLIENT_ID")
        if not self.client_secret:
            missing.append("APISYNC_CLIENT_SECRET")
        if not self.token_url:
            missing.append("APISYNC_TOKEN_URL")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )

        self._cached_token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> Optional[str]:
        """Get a valid access token, fetching or refreshing as needed.

        Raises:
            TokenFetchError: If the token cannot be obtained after retries
            InvalidCredentialsError: If the token server rejects the client
        """
        if self._cached_token and not self._cached_token.is_expired:
            return self._cached_token.access_token

        async with self._lock:
            if self._cached_token and not self._cached_token.is_expired:
                return self._cached_token.access_token

            self._cached_token = await self._fetch_token()
            return self._cached_token.access_token

    async def _fetch_token(self, max_retries: int = 3) -> CachedToken:
        """Fetch a new access token, backing off 1s, 2s, 4s between attempts."""
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.scope:
            payload["scope"] = self.scope

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
        }

        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.post(
                        self.token_url,
                        data=payload,
                        headers=headers,
                        timeout=aiohttp.ClientTimeout(total=30),
                    ) as response:
                        if response.status == 200:
                            data = await response.json()

                            access_token = data.get("access_token")
                            if not access_token:
                                raise TokenFetchError(
                                    "Token response missing access_token",
                                    status_code=200,
                                    attempts=attempt,
                                    details={"response_keys": list(data.keys())},
                                )

                            expires_in = int(data.get("expires_in", 3600))
                            token = CachedToken(
                                access_token=access_token,
                                expires_at=time.time() + expires_in,
                                token_type=data.get("token_type", "Bearer"),
                                expires_in=expires_in,
                            )
                            logger.info(
                                f"Token fetched (id={token.token_id}), expires in {expires_in}s"
                            )
                            return token

                        error_text = await response.text()

                        if response.status == 401:
                            raise InvalidCredentialsError(
                                "Invalid client credentials",
                                details={"response": error_text[:200]},
                            )

                        if response.status == 400:
                            raise TokenFetchError(
                                f"Invalid token request: {error_text[:200]}",
                                status_code=400,
                                attempts=attempt,
                            )

                        last_error = TokenFetchError(
                            f"Token server returned HTTP {response.status}",
                            status_code=response.status,
                            attempts=attempt,
                            details={"response": error_text[:200]},
                        )
                        logger.warning(
                            f"Token fetch attempt {attempt}/{max_retries} failed: "
                            f"HTTP {response.status}"
                        )

            except InvalidCredentialsError:
                raise

            except aiohttp.ClientConnectionError as e:
                last_error = ConnectionError(
                    f"Failed to connect to token server: {e}",
                    host=self.token_url,
                    cause=e,
                )
                logger.warning(
                    f"Token fetch attempt {attempt}/{max_retries} failed: "
                    f"Connection error - {e}"
                )

            except asyncio.TimeoutError as e:
                last_error = TimeoutError(
                    "Token request timed out",
                    timeout_seconds=30,
                    cause=e,
                )
                logger.warning(
                    f"Token fetch attempt {attempt}/{max_retries} failed: Timeout"
                )

            except aiohttp.ClientError as e:
                last_error = NetworkError(
                    f"Network error fetching token: {e}",
                    cause=e,
                )
                logger.warning(
                    f"Token fetch attempt {attempt}/{max_retries} failed: {e}"
                )

            if attempt < max_retries:
                await asyncio.sleep(2 ** (attempt - 1))

        raise TokenFetchError(
            f"Failed to fetch token after {max_retries} attempts",
            attempts=max_retries,
            cause=last_error,
        )

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a fresh one."""
        self._cached_token = None

    @property
    def token_info(self) -> Optional[dict]:
        """Debug info about the cached token (never the token itself)."""
        if not self._cached_token:
            return None
        return {
            "token_id": self._cached_token.token_id,
            "is_expired": self._cached_token.is_expired,
            "time_remaining_seconds": self._cached_token.time_remaining,
            "expires_in_original": self._cached_token.expires_in,
        }


class BasicAuthProvider(ITokenProvider):
    """HTTP basic authentication.

    The "token" is the base64 encoded ``username:password`` pair, sent as
    ``Authorization: Basic <token>``.
    """

    token_type = "Basic"

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.username = username or os.getenv("APISYNC_USERNAME")
        self.password = password or os.getenv("APISYNC_PASSWORD")

        missing = []
        if not self.username:
            missing.append("APISYNC_USERNAME")
        if not self.password:
            missing.append("APISYNC_PASSWORD")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )

        raw = f"{self.username}:{self.password}".encode()
        self._token = base64.b64encode(raw).decode("ascii")

    async def get_token(self) -> Optional[str]:
        return self._token

    def invalidate(self) -> None:
        # Static credentials: a 401 means they are wrong, nothing to refresh.
        logger.warning(f"Basic credentials rejected for user {self.username}")


def create_token_provider(method: Optional[str] = None) -> ITokenProvider:
    """Build the token provider selected by APISYNC_AUTH_METHOD (oauth2 or basic)."""
    method = (method or os.getenv("APISYNC_AUTH_METHOD", "oauth2")).lower()
    if method == "basic":
        return BasicAuthProvider()
    if method == "oauth2":
        return TokenManager()
    raise ConfigurationError(
        f"Unknown auth method '{method}' (expected 'oauth2' or 'basic')",
        missing_keys=["APISYNC_AUTH_METHOD"],
    )


__all__ = [
    "CachedToken",
    "TokenManager",
    "BasicAuthProvider",
    "create_token_provider",
    "token_fingerprint",
]
