"""
Enumeration types for the SteadyBooks integration layer.

All enums inherit from str so they serialize to JSON and persist to DuckDB
as their plain values.
"""

from enum import Enum


class ConnectionStatus(str, Enum):
    """
    Health of a dashboard's QuickBooks connection.

    CONNECTED and ERROR connections are still usable for syncing; EXPIRED and
    DISCONNECTED connections require the owner to re-authorize.
    """

    CONNECTED = "connected"
    EXPIRED = "expired"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class DateRangeType(str, Enum):
    """Reporting period used for the profit and loss figure."""

    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    YEAR_TO_DATE = "year_to_date"
    CUSTOM = "custom"


class SubscriptionPlan(str, Enum):
    """Billing plan a tenant is on."""

    FREE_TRIAL = "free_trial"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: object) -> "SubscriptionPlan":
        """
        Parse a plan name from payment provider metadata.

        Accepts either the stored value ("business") or the member name in any
        case ("Business", "BUSINESS"). Anything unrecognised maps to FREE_TRIAL.
        """
        if not isinstance(value, str):
            return cls.FREE_TRIAL
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        for plan in cls:
            if plan.value == normalized or plan.value.replace("_", "") == normalized:
                return plan
        return cls.FREE_TRIAL


class SubscriptionStatus(str, Enum):
    """Local subscription status, mirroring the payment provider's states."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


class BillingInterval(str, Enum):
    """Recurring billing interval."""

    MONTH = "month"
    YEAR = "year"
