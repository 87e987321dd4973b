"""
QuickBooks OAuth2 token lifecycle.

Covers the three-legged authorization flow (authorization URL, code exchange)
and keeps stored access tokens fresh. Per connection the lifecycle is:

    NoToken -> Valid -> Refreshing -> Valid | Expired

A failed refresh moves the connection to Expired; only a new authorization
brings it back. Refreshes for one dashboard are serialized in-process so two
concurrent syncs never spend the same refresh token twice.
"""

import asyncio
import secrets
import weakref
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel, Field, SecretStr, ValidationError

from steadybooks.config import Settings
from steadybooks.models.connection import Connection, TokenGrant, utc_now
from steadybooks.models.enums import ConnectionStatus
from steadybooks.resilience.policy import ResiliencePolicy
from steadybooks.storage.resilient import ResilientStore

from .qbo_client import QBOAuthError, QBOTransientError

logger = structlog.get_logger()

# Intuit documents a 100-day refresh token lifetime.
DEFAULT_REFRESH_TOKEN_LIFETIME = timedelta(days=100)

REFRESH_FAILED_MESSAGE = "Token refresh failed. Please reconnect."


class OAuthExchangeFailed(QBOAuthError):
    """Raised when the authorization code cannot be exchanged for tokens."""

    pass


class MalformedProviderResponse(OAuthExchangeFailed):
    """Raised when the token endpoint answers 2xx with an unusable body."""

    pass


class TokenRefreshFailed(QBOAuthError):
    """Raised when a refresh grant fails; the connection is now expired."""

    pass


class TokenResponse(BaseModel):
    """Token endpoint response body."""

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    token_type: str = "bearer"
    expires_in: int = Field(gt=0)
    x_refresh_token_expires_in: Optional[int] = Field(default=None, gt=0)

    def to_grant(self, now: datetime) -> TokenGrant:
        refresh_lifetime = (
            timedelta(seconds=self.x_refresh_token_expires_in)
            if self.x_refresh_token_expires_in
            else DEFAULT_REFRESH_TOKEN_LIFETIME
        )
        return TokenGrant(
            access_token=SecretStr(self.access_token),
            refresh_token=SecretStr(self.refresh_token),
            token_type=self.token_type,
            access_token_expires_at=now + timedelta(seconds=self.expires_in),
            refresh_token_expires_at=now + refresh_lifetime,
        )


def split_state(state: str) -> tuple[str, str]:
    """
    Split a callback ``state`` into (correlation_id, csrf_state).

    Raises:
        ValueError: If either part is missing
    """
    correlation_id, sep, csrf_state = state.rpartition(":")
    if not sep or not correlation_id or not csrf_state:
        raise ValueError("Malformed OAuth state")
    return correlation_id, csrf_state


class TokenLifecycleManager:
    """
    Issues authorization URLs, exchanges codes and refreshes tokens.

    Attributes:
        settings: Application settings (client credentials, endpoints)
        policy: Outbound resilience policy used for refresh grants
        store: Async storage facade for reading and persisting connections
        refresh_margin: Refresh when the access token expires within this window
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        policy: ResiliencePolicy,
        store: ResilientStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self._http = http_client
        self.policy = policy
        self.store = store
        self.refresh_margin = timedelta(seconds=settings.token_refresh_margin_seconds)
        self._clock = clock
        # Entries disappear once no coroutine holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @staticmethod
    def new_csrf_state() -> str:
        return secrets.token_urlsafe(32)

    def build_authorization_url(self, correlation_id: str, csrf_state: str) -> str:
        """
        Build the Intuit consent URL.

        Args:
            correlation_id: Dashboard the authorization is for; echoed back in state
            csrf_state: Unguessable per-request value checked on callback

        Returns:
            Authorization URL for user redirection
        """
        params = {
            "client_id": self.settings.intuit_client_id,
            "scope": self.settings.intuit_scopes,
            "redirect_uri": self.settings.intuit_redirect_uri,
            "response_type": "code",
            "state": f"{correlation_id}:{csrf_state}",
        }
        url = f"{self.settings.intuit_auth_url}?{urlencode(params)}"
        logger.info("authorization_url_generated", dashboard_id=correlation_id)
        return url

    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        return await self._http.post(
            self.settings.intuit_token_url,
            data=data,
            headers={"Accept": "application/json"},
            auth=(self.settings.intuit_client_id, self.settings.intuit_client_secret),
        )

    def _parse_token_response(self, response: httpx.Response) -> TokenGrant:
        try:
            body = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedProviderResponse("Token endpoint returned an unusable response") from e
        return body.to_grant(self._clock())

    async def exchange_code_for_tokens(self, code: str, realm_id: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens. Single attempt, never retried.

        Args:
            code: Authorization code from the callback
            realm_id: QuickBooks company ID from the callback

        Returns:
            TokenGrant with absolute expiries

        Raises:
            OAuthExchangeFailed: On transport failure or non-2xx response
            MalformedProviderResponse: On a 2xx response with missing fields
        """
        try:
            response = await self._post_token(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.intuit_redirect_uri,
                }
            )
        except httpx.HTTPError as e:
            logger.error("oauth_code_exchange_error", realm_id=realm_id, error=str(e))
            raise OAuthExchangeFailed(f"Token exchange failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "oauth_code_exchange_failed",
                realm_id=realm_id,
                status_code=response.status_code,
            )
            raise OAuthExchangeFailed(f"Token exchange failed: {response.status_code}")

        grant = self._parse_token_response(response)
        logger.info("oauth_code_exchanged", realm_id=realm_id, token_type=grant.token_type)
        return grant

    async def _refresh_grant(self, refresh_token: SecretStr) -> TokenGrant:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token.get_secret_value()}

        async def attempt() -> TokenGrant:
            response = await self._post_token(data)
            status = response.status_code
            if status == 429 or status >= 500:
                raise QBOTransientError(f"Token endpoint returned {status}", status)
            if status >= 400:
                raise TokenRefreshFailed(f"Token endpoint rejected refresh: {status}")
            return self._parse_token_response(response)

        return await self.policy.execute(attempt)

    def _lock_for(self, dashboard_id: str) -> asyncio.Lock:
        lock = self._locks.get(dashboard_id)
        if lock is None:
            lock = self._locks[dashboard_id] = asyncio.Lock()
        return lock

    async def ensure_fresh_token(self, connection: Connection) -> Connection:
        """
        Return a connection whose access token is good for at least the refresh margin.

        Args:
            connection: Stored connection to check

        Returns:
            The same connection when its token is still fresh, otherwise the
            refreshed and persisted connection

        Raises:
            TokenRefreshFailed: If refreshing failed; the connection has been
                persisted as expired and must not be refreshed again this cycle
        """
        if not connection.expires_within(self.refresh_margin, self._clock()):
            return connection

        async with self._lock_for(connection.dashboard_id):
            stored = await self.store.load_connection(connection.dashboard_id)
            current = stored or connection

            if current.status == ConnectionStatus.EXPIRED or not current.has_tokens:
                raise TokenRefreshFailed(current.last_error or REFRESH_FAILED_MESSAGE)

            now = self._clock()
            if not current.expires_within(self.refresh_margin, now):
                logger.info("token_refresh_skipped", dashboard_id=current.dashboard_id)
                return current

            if current.refresh_token_expires_at <= now:
                logger.warning("refresh_token_expired", dashboard_id=current.dashboard_id)
                await self._mark_expired(current)
                raise TokenRefreshFailed(REFRESH_FAILED_MESSAGE)

            logger.info("token_refresh_started", dashboard_id=current.dashboard_id)
            try:
                grant = await self._refresh_grant(current.refresh_token)
            except Exception as e:
                logger.error(
                    "token_refresh_failed",
                    dashboard_id=current.dashboard_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._mark_expired(current)
                raise TokenRefreshFailed(REFRESH_FAILED_MESSAGE) from e

            refreshed = current.with_tokens(grant, now=self._clock())
            await self.store.save_connection(refreshed)
            logger.info("tokens_refreshed", dashboard_id=refreshed.dashboard_id)
            return refreshed

    async def _mark_expired(self, connection: Connection) -> None:
        await self.store.save_connection(
            connection.with_status(ConnectionStatus.EXPIRED, REFRESH_FAILED_MESSAGE, now=self._clock())
        )
