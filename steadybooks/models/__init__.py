"""
Pydantic data models for the SteadyBooks integration layer.

Organized by concern:
- enums: Shared enumeration types
- connection: QuickBooks connection, token grants and dashboard configuration
- snapshot: Financial figures produced by a sync
- billing: Tenants, subscriptions and payment provider events
"""

from .billing import PaymentEvent, Subscription, Tenant
from .connection import Connection, DashboardConfig, TokenGrant, resolve_date_range, utc_now
from .enums import (
    BillingInterval,
    ConnectionStatus,
    DateRangeType,
    SubscriptionPlan,
    SubscriptionStatus,
)
from .snapshot import CompanyInfo, FinancialSnapshot, ProfitLoss

__all__ = [
    # Enums
    "BillingInterval",
    "ConnectionStatus",
    "DateRangeType",
    "SubscriptionPlan",
    "SubscriptionStatus",
    # Connection
    "Connection",
    "DashboardConfig",
    "TokenGrant",
    "resolve_date_range",
    "utc_now",
    # Snapshot
    "CompanyInfo",
    "FinancialSnapshot",
    "ProfitLoss",
    # Billing
    "PaymentEvent",
    "Subscription",
    "Tenant",
]
