"""
Dashboard sync orchestration.

Pulls a dashboard's figures from QuickBooks in one pass:
1. Load the connection and dashboard config; bail out if not active
2. Make sure the access token is fresh (refreshing at most once)
3. Fan out the enabled figure queries concurrently
4. Assemble a FinancialSnapshot and record the sync on the connection

A single failing figure degrades to zero instead of failing the sync. Any
other failure is recorded on the connection as an error and the caller gets
None, so the dashboard falls back to its last rendered figures.
"""

import asyncio
from datetime import date, datetime
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import SecretStr

from steadybooks.models.connection import DashboardConfig, resolve_date_range, utc_now
from steadybooks.models.enums import ConnectionStatus
from steadybooks.models.snapshot import ZERO, FinancialSnapshot, ProfitLoss
from steadybooks.resilience.policy import CircuitOpenError
from steadybooks.storage.resilient import ResilientStore

from .qbo_client import QBOAPIError, QBOClient
from .token_manager import TokenLifecycleManager, TokenRefreshFailed

logger = structlog.get_logger()

T = TypeVar("T")

# Failures a single figure may absorb without failing the whole sync.
DEGRADABLE_ERRORS = (QBOAPIError, CircuitOpenError, httpx.HTTPError, asyncio.TimeoutError)


class DataSyncOrchestrator:
    """
    Runs one dashboard sync end to end.

    Attributes:
        store: Async storage facade
        token_manager: Keeps the connection's access token fresh
        qbo_client: QuickBooks figure queries
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

    async def sync(self, dashboard_id: str) -> Optional[FinancialSnapshot]:
        """
        Sync a dashboard's figures.

        Args:
            dashboard_id: Dashboard to sync

        Returns:
            The fresh snapshot, or None when there is no active connection,
            the token could not be refreshed, or the sync failed
        """
        log = logger.bind(dashboard_id=dashboard_id)

        try:
            connection = await self.store.load_connection(dashboard_id)
            if connection is None or not connection.is_active:
                log.warning(
                    "sync_skipped_no_active_connection",
                    status=connection.status.value if connection else None,
                )
                return None

            config = await self.store.load_dashboard_config(dashboard_id)

            try:
                connection = await self.token_manager.ensure_fresh_token(connection)
            except TokenRefreshFailed:
                log.warning("sync_skipped_token_refresh_failed")
                return None

            start, end = resolve_date_range(config, self._clock().date())
            log.info("sync_started", start_date=start.isoformat(), end_date=end.isoformat())

            snapshot = await self._fetch_figures(connection.access_token, connection.realm_id, config, start, end)

            await self.store.save_connection(connection.synced(now=snapshot.synced_at))
            log.info("sync_completed", margin=str(snapshot.margin))
            return snapshot

        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("sync_failed", error_type=type(e).__name__, error=str(e), exc_info=True)
            await self._record_failure(dashboard_id, str(e) or type(e).__name__)
            return None

    async def _fetch_figures(
        self,
        access_token: SecretStr,
        realm_id: str,
        config: DashboardConfig,
        start: date,
        end: date,
    ) -> FinancialSnapshot:
        client = self.qbo_client

        tasks = [
            asyncio.ensure_future(
                self._figure(
                    "cash_balance",
                    config.show_cash_balance,
                    ZERO,
                    lambda: client.get_cash_balance(access_token, realm_id),
                )
            ),
            asyncio.ensure_future(
                self._figure(
                    "profit_and_loss",
                    config.show_profit,
                    ProfitLoss(),
                    lambda: client.get_profit_and_loss(access_token, realm_id, start, end),
                )
            ),
            asyncio.ensure_future(
                self._figure(
                    "taxes_due",
                    config.show_taxes_due,
                    ZERO,
                    lambda: client.get_tax_liability(access_token, realm_id),
                )
            ),
            asyncio.ensure_future(
                self._figure(
                    "outstanding_invoices",
                    config.show_outstanding_invoices,
                    ZERO,
                    lambda: client.get_outstanding_invoices(access_token, realm_id),
                )
            ),
        ]

        try:
            cash, profit_loss, taxes, invoices = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        return FinancialSnapshot(
            cash_balance=cash,
            revenue=profit_loss.revenue,
            expenses=profit_loss.expenses,
            profit=profit_loss.profit,
            taxes_due=taxes,
            outstanding_invoices=invoices,
            synced_at=self._clock(),
        )

    async def _figure(
        self,
        name: str,
        enabled: bool,
        default: T,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one figure query, degrading to ``default`` on provider failures."""
        if not enabled:
            return default
        try:
            return await call()
        except DEGRADABLE_ERRORS as e:
            logger.warning(
                "figure_query_degraded",
                figure=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return default

    async def _record_failure(self, dashboard_id: str, message: str) -> None:
        try:
            connection = await self.store.load_connection(dashboard_id)
            if connection is not None:
                await self.store.save_connection(
                    connection.with_status(ConnectionStatus.ERROR, message, now=self._clock())
                )
        except Exception as e:
            logger.error(
                "sync_failure_not_recorded",
                dashboard_id=dashboard_id,
                error_type=type(e).__name__,
                error=str(e),
            )
