"""
Abstract storage interface for the SteadyBooks integration layer.

Defines the persistence contract used by the token manager, the sync
orchestrator and the webhook reconciler. Implementations are synchronous;
async callers go through ResilientStore, which runs each call in a worker
thread under the storage resilience policy.
"""

from abc import ABC, abstractmethod
from typing import Optional

from steadybooks.models.billing import Subscription, Tenant
from steadybooks.models.connection import Connection, DashboardConfig
from steadybooks.models.enums import SubscriptionPlan
from steadybooks.resilience.policy import TransientError


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class TransientStorageError(StorageError, TransientError):
    """Storage failure that may succeed on retry (I/O hiccup, write conflict)."""

    pass


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Implementations must be safe to call from several worker threads at once
    and must raise StorageError (or TransientStorageError) rather than driver
    exceptions.
    """

    # =========================================================================
    # Connections
    # =========================================================================

    @abstractmethod
    def load_connection(self, dashboard_id: str) -> Optional[Connection]:
        """
        Load the QuickBooks connection of a dashboard.

        Args:
            dashboard_id: Owning dashboard ID

        Returns:
            The connection, or None if the dashboard was never connected

        Raises:
            StorageError: If the read fails
        """
        pass

    @abstractmethod
    def save_connection(self, connection: Connection) -> None:
        """
        Insert or replace a connection, keyed by dashboard ID.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    def load_dashboard_config(self, dashboard_id: str) -> Optional[DashboardConfig]:
        """Load a dashboard's figure toggles and date range, if configured."""
        pass

    # =========================================================================
    # Billing
    # =========================================================================

    @abstractmethod
    def load_subscription(
        self,
        stripe_subscription_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Look up a subscription by Stripe subscription ID or by tenant.

        Exactly one of the two keys must be given.

        Raises:
            ValueError: If neither or both keys are given
            StorageError: If the read fails
        """
        pass

    @abstractmethod
    def upsert_subscription(self, subscription: Subscription) -> None:
        """
        Insert or update a subscription keyed by its local ID.

        Raises:
            StorageError: If another tenant already holds the Stripe
                subscription ID, or the write fails
        """
        pass

    @abstractmethod
    def load_tenant(self, tenant_id: str) -> Optional[Tenant]:
        pass

    @abstractmethod
    def update_tenant_plan(self, tenant_id: str, plan: SubscriptionPlan) -> None:
        pass

    @abstractmethod
    def set_tenant_customer_id(self, tenant_id: str, customer_id: str) -> None:
        pass

    def close(self) -> None:
        """Release backend resources. Default is a no-op."""
        pass


def check_single_key(stripe_subscription_id: Optional[str], tenant_id: Optional[str]) -> None:
    if (stripe_subscription_id is None) == (tenant_id is None):
        raise ValueError("Provide exactly one of stripe_subscription_id or tenant_id")
