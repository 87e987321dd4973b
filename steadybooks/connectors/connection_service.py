"""
Connection management service.

Drives the user-facing side of a dashboard's QuickBooks connection: starting
authorization, completing the OAuth callback, reporting status and
disconnecting. Callback failures are turned into user-facing messages here;
they never surface as HTTP errors.
"""

import asyncio
import secrets
from datetime import datetime
from typing import Callable, Optional

import httpx
import structlog
from pydantic import BaseModel

from steadybooks.models.connection import Connection, utc_now
from steadybooks.resilience.policy import CircuitOpenError
from steadybooks.storage.base import StorageError
from steadybooks.storage.resilient import ResilientStore

from .qbo_client import QBOAPIError, QBOAuthError, QBOClient
from .token_manager import TokenLifecycleManager, split_state

logger = structlog.get_logger()

DEFAULT_COMPANY_NAME = "Unknown Company"

ACCESS_DENIED_MESSAGE = "You denied access to QuickBooks. Please try again and authorize the connection."
MISSING_PARAMS_MESSAGE = "Missing required connection parameters. Please try again."
INVALID_STATE_MESSAGE = "Invalid connection state. Please try again."
CONNECT_FAILED_MESSAGE = "An error occurred while connecting to QuickBooks. Please try again."


class AuthorizationStart(BaseModel):
    authorization_url: str
    csrf_state: str


class CallbackResult(BaseModel):
    """Outcome of an OAuth callback, rendered by the callback page."""

    success: bool
    message: str
    dashboard_id: Optional[str] = None
    company_name: Optional[str] = None


class ConnectionService:
    """
    Connect, inspect and disconnect dashboard QuickBooks connections.

    Attributes:
        store: Async storage facade
        token_manager: OAuth2 flow and token exchange
        qbo_client: Used to look up the company name after authorization
    """

    def __init__(
        self,
        store: ResilientStore,
        token_manager: TokenLifecycleManager,
        qbo_client: QBOClient,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.token_manager = token_manager
        self.qbo_client = qbo_client
        self._clock = clock

    def start_authorization(self, dashboard_id: str) -> AuthorizationStart:
        csrf_state = self.token_manager.new_csrf_state()
        url = self.token_manager.build_authorization_url(dashboard_id, csrf_state)
        return AuthorizationStart(authorization_url=url, csrf_state=csrf_state)

    async def complete_authorization(
        self,
        code: Optional[str],
        state: Optional[str],
        realm_id: Optional[str],
        error: Optional[str] = None,
        expected_csrf_state: Optional[str] = None,
    ) -> CallbackResult:
        """
        Finish the OAuth flow for a dashboard.

        Args:
            code: Authorization code from Intuit
            state: ``<dashboard_id>:<csrf_state>`` echoed back by Intuit
            realm_id: QuickBooks company ID
            error: OAuth error code, if the user denied or Intuit failed
            expected_csrf_state: CSRF state issued when authorization started

        Returns:
            CallbackResult describing success or a user-facing failure
        """
        if error:
            logger.warning("oauth_error_received", error=error)
            message = ACCESS_DENIED_MESSAGE if error == "access_denied" else f"OAuth error: {error}"
            return CallbackResult(success=False, message=message)

        if not code or not state or not realm_id:
            logger.warning("oauth_callback_missing_params")
            return CallbackResult(success=False, message=MISSING_PARAMS_MESSAGE)

        try:
            dashboard_id, csrf_state = split_state(state)
        except ValueError:
            logger.warning("oauth_state_malformed")
            return CallbackResult(success=False, message=INVALID_STATE_MESSAGE)

        if not expected_csrf_state or not secrets.compare_digest(csrf_state, expected_csrf_state):
            logger.warning("oauth_state_mismatch", dashboard_id=dashboard_id)
            return CallbackResult(success=False, message=INVALID_STATE_MESSAGE, dashboard_id=dashboard_id)

        try:
            grant = await self.token_manager.exchange_code_for_tokens(code, realm_id)
            company_name = await self._lookup_company_name(grant.access_token, realm_id)

            now = self._clock()
            existing = await self.store.load_connection(dashboard_id)
            if existing is None:
                connection = Connection(
                    dashboard_id=dashboard_id,
                    realm_id=realm_id,
                    company_name=company_name or DEFAULT_COMPANY_NAME,
                    connected_at=now,
                )
            else:
                connection = existing.model_copy(
                    update={
                        "realm_id": realm_id,
                        "company_name": company_name or existing.company_name,
                    }
                )
            connection = connection.with_tokens(grant, now=now)
            await self.store.save_connection(connection)

        except (QBOAuthError, StorageError) as e:
            logger.error(
                "oauth_callback_failed",
                dashboard_id=dashboard_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return CallbackResult(success=False, message=CONNECT_FAILED_MESSAGE, dashboard_id=dashboard_id)

        logger.info(
            "quickbooks_connected",
            dashboard_id=dashboard_id,
            realm_id=realm_id,
            company_name=connection.company_name,
        )
        return CallbackResult(
            success=True,
            message=f"Connected to {connection.company_name}.",
            dashboard_id=dashboard_id,
            company_name=connection.company_name,
        )

    async def _lookup_company_name(self, access_token, realm_id: str) -> Optional[str]:
        try:
            info = await self.qbo_client.get_company_info(access_token, realm_id)
        except (QBOAPIError, CircuitOpenError, httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning("company_info_unavailable", realm_id=realm_id, error=str(e))
            return None
        if info is None or not info.company_name:
            return None
        return info.company_name

    async def get_status(self, dashboard_id: str) -> Optional[Connection]:
        return await self.store.load_connection(dashboard_id)

    async def disconnect(self, dashboard_id: str) -> bool:
        """
        Retire a dashboard's connection, clearing its tokens.

        Returns:
            False if the dashboard has no connection
        """
        connection = await self.store.load_connection(dashboard_id)
        if connection is None:
            return False

        await self.store.save_connection(connection.retired(now=self._clock()))
        logger.info("quickbooks_disconnected", dashboard_id=dashboard_id)
        return True
