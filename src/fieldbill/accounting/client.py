"""External accounting system client with bearer auth and proactive token refresh."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, cast

import httpx
import structlog

from fieldbill.config import get_settings
from fieldbill.ledger import AccountIntegration

logger = structlog.get_logger(__name__)


class AccountingAPIError(Exception):
    """Base exception for accounting API errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class AuthenticationError(AccountingAPIError):
    """No usable access token."""

    pass


class RateLimitError(AccountingAPIError):
    """Rate limit exceeded."""

    pass


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


TokenCallback = Callable[[TokenSet], None]


class AccountingAPIClient:
    """Async client for the external accounting system."""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        realm_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        on_tokens_refreshed: TokenCallback | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.accounting_api_url).rstrip("/")
        self._client_id = client_id or settings.accounting_client_id
        self._client_secret = (
            client_secret or settings.accounting_client_secret.get_secret_value()
        )
        self._timeout = settings.accounting_timeout
        self._max_retries = settings.accounting_max_retries
        self._refresh_window = timedelta(seconds=settings.token_refresh_window_seconds)

        self._access_token = access_token
        self._refresh_token = refresh_token
        self._token_expires_at = token_expires_at
        self._realm_id = realm_id
        self._on_tokens_refreshed = on_tokens_refreshed

        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def for_integration(
        cls,
        integration: AccountIntegration,
        on_tokens_refreshed: TokenCallback | None = None,
        base_url: str | None = None,
    ) -> "AccountingAPIClient":
        """Build a client from a stored account integration."""
        return cls(
            base_url=base_url,
            access_token=integration.access_token,
            refresh_token=integration.refresh_token,
            token_expires_at=integration.token_expires_at,
            realm_id=integration.external_realm_id,
            on_tokens_refreshed=on_tokens_refreshed,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AccountingAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # === Authentication ===

    def _token_still_valid(self, now: datetime) -> bool:
        if not self._access_token:
            return False
        return self._token_expires_at is None or now < self._token_expires_at

    def _needs_refresh(self, now: datetime) -> bool:
        if self._token_expires_at is None:
            return False
        return now >= self._token_expires_at - self._refresh_window

    async def refresh_tokens(self) -> TokenSet:
        """Exchange the refresh token for a new access token."""
        if not self._refresh_token:
            raise AuthenticationError("No refresh token available")

        client = await self._get_client()
        response = await client.post(
            "/oauth2/v1/tokens/bearer",
            data={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
            auth=(self._client_id, self._client_secret),
        )
        if response.status_code in (400, 401):
            raise AuthenticationError(
                "Refresh token rejected", status_code=response.status_code
            )
        response.raise_for_status()

        data_raw = response.json()
        if not isinstance(data_raw, dict):
            raise AccountingAPIError("Invalid token refresh response format")
        data = cast(dict[str, Any], data_raw)

        self._access_token = data["access_token"]
        self._refresh_token = data.get("refresh_token", self._refresh_token)
        expires_in = data.get("expires_in")
        self._token_expires_at = (
            datetime.now(UTC) + timedelta(seconds=int(expires_in)) if expires_in else None
        )
        tokens = TokenSet(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            expires_at=self._token_expires_at,
        )
        logger.debug("tokens_refreshed", expires_at=str(self._token_expires_at))

        if self._on_tokens_refreshed is not None:
            self._on_tokens_refreshed(tokens)
        return tokens

    async def _ensure_authenticated(self) -> None:
        """Refresh proactively near expiry; keep going on a still-valid token."""
        async with self._lock:
            now = datetime.now(UTC)
            if not self._access_token and not self._refresh_token:
                raise AuthenticationError("Integration has no credentials")
            if not self._access_token or self._needs_refresh(now):
                try:
                    await self.refresh_tokens()
                except (AccountingAPIError, httpx.HTTPError) as e:
                    if not self._token_still_valid(now):
                        raise AuthenticationError(f"Token refresh failed: {e}") from e
                    logger.warning(
                        "token_refresh_failed",
                        error=str(e),
                        expires_at=str(self._token_expires_at),
                    )

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with auth token."""
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    # === Generic Request Methods ===

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Make an authenticated API request with retry logic."""
        await self._ensure_authenticated()
        client = await self._get_client()

        if self._realm_id:
            params = dict(params or {})
            params.setdefault("realm_id", self._realm_id)

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers=self._get_headers(),
            )

            if response.status_code == 401 and retry_count < 1:
                # Token revoked mid-flight, refresh and retry once
                await self.refresh_tokens()
                return await self._request(method, path, params, json, retry_count + 1)

            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", "60"))
                raise RateLimitError(
                    f"Rate limited, retry after {retry_after}s",
                    status_code=429,
                    details={"retry_after": retry_after},
                )

            if response.status_code >= 400:
                try:
                    error_detail = response.json() if response.content else {}
                except ValueError:
                    error_detail = {
                        "raw": response.text[:500] if response.text else "empty response"
                    }
                raise AccountingAPIError(
                    f"API error: {response.status_code}",
                    status_code=response.status_code,
                    details=error_detail,
                )

            return response.json() if response.content else {}

        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)  # Exponential backoff
                return await self._request(method, path, params, json, retry_count + 1)
            raise AccountingAPIError(f"Request failed: {e}") from e

    async def get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Make GET request."""
        return await self._request("GET", path, params=params)

    async def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Make POST request."""
        return await self._request("POST", path, params=params, json=json)

    @staticmethod
    def _clamp_limit(limit: int) -> int:
        return min(max(limit, 1), 500)

    @staticmethod
    def _extract_items(result: Any) -> list[dict[str, Any]]:
        """Return list of items from a list or paged response."""
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            items = result.get("items")
            if isinstance(items, list):
                return items
        return []

    # === Invoice Endpoints ===

    async def create_invoice(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create an invoice; the response carries the external id."""
        result = await self.post("/api/v1/invoices/", json=data)
        if not isinstance(result, dict) or not result.get("id"):
            raise AccountingAPIError("Invoice create response missing id", details=result)
        return result

    async def get_invoice(self, external_id: str) -> dict[str, Any]:
        result = await self.get(f"/api/v1/invoices/{external_id}")
        return result if isinstance(result, dict) else {}

    # === Payment Endpoints ===

    async def list_payments(
        self, modified_since: datetime | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """List every payment modified since the given time, following pages."""
        limit = self._clamp_limit(limit)
        params: dict[str, Any] = {"limit": limit}
        if modified_since is not None:
            params["modified_since"] = modified_since.astimezone(UTC).isoformat()

        payments: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = self._extract_items(
                await self.get("/api/v1/payments/", params={**params, "offset": offset})
            )
            payments.extend(page)
            if len(page) < limit:
                break
            offset += limit
        return payments
