"""
Async facade over a synchronous StorageBackend.

Each call runs in a worker thread (asyncio.to_thread) under the storage
resilience policy, so a slow or briefly unavailable database never blocks
the event loop and transient failures are retried with backoff.

A timeout only abandons the await: the worker thread of a timed-out write
keeps running and may finish alongside the retry. Backend writes are
idempotent upserts and DuckDBStorage runs them under one write lock, so the
orphaned write and its retry land one after the other with the same values.
"""

import asyncio
from functools import partial
from typing import Any, Callable, Optional, TypeVar

from steadybooks.models.billing import Subscription, Tenant
from steadybooks.models.connection import Connection, DashboardConfig
from steadybooks.models.enums import SubscriptionPlan
from steadybooks.resilience.policy import ResiliencePolicy

from .base import StorageBackend

T = TypeVar("T")


class ResilientStore:
    """
    Policy-wrapped async access to a storage backend.

    Attributes:
        backend: Synchronous storage implementation
        policy: Storage resilience policy (timeout + retry, no breaker)
    """

    def __init__(self, backend: StorageBackend, policy: ResiliencePolicy):
        self.backend = backend
        self.policy = policy

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await self.policy.execute(lambda: asyncio.to_thread(partial(fn, *args, **kwargs)))

    async def load_connection(self, dashboard_id: str) -> Optional[Connection]:
        return await self._call(self.backend.load_connection, dashboard_id)

    async def save_connection(self, connection: Connection) -> None:
        await self._call(self.backend.save_connection, connection)

    async def load_dashboard_config(self, dashboard_id: str) -> DashboardConfig:
        """Load a dashboard's config, falling back to defaults when none is stored."""
        config = await self._call(self.backend.load_dashboard_config, dashboard_id)
        return config or DashboardConfig(dashboard_id=dashboard_id)

    async def load_subscription(
        self,
        stripe_subscription_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        return await self._call(
            self.backend.load_subscription,
            stripe_subscription_id=stripe_subscription_id,
            tenant_id=tenant_id,
        )

    async def upsert_subscription(self, subscription: Subscription) -> None:
        await self._call(self.backend.upsert_subscription, subscription)

    async def load_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return await self._call(self.backend.load_tenant, tenant_id)

    async def update_tenant_plan(self, tenant_id: str, plan: SubscriptionPlan) -> None:
        await self._call(self.backend.update_tenant_plan, tenant_id, plan)

    async def set_tenant_customer_id(self, tenant_id: str, customer_id: str) -> None:
        await self._call(self.backend.set_tenant_customer_id, tenant_id, customer_id)
