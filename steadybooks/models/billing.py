"""
Billing models: tenants, their subscription, and inbound payment events.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .connection import utc_now
from .enums import BillingInterval, SubscriptionPlan, SubscriptionStatus


class Tenant(BaseModel):
    """
    Account that owns dashboards and pays for a plan.

    Attributes:
        id: Tenant identifier (Stripe metadata ``user_id``)
        email: Billing contact address
        current_plan: Denormalized copy of the subscription's plan
        stripe_customer_id: Stripe customer linked at checkout
    """

    id: str
    email: str = ""
    current_plan: SubscriptionPlan = SubscriptionPlan.FREE_TRIAL
    stripe_customer_id: Optional[str] = None


class Subscription(BaseModel):
    """
    A tenant's local mirror of its Stripe subscription.

    Each tenant has at most one; stripe_subscription_id is unique across
    tenants. Updated only by the webhook reconciler.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: str
    stripe_price_id: Optional[str] = None
    plan: SubscriptionPlan = SubscriptionPlan.FREE_TRIAL
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    amount: Decimal = Decimal("0")
    currency: str = "usd"
    interval: BillingInterval = BillingInterval.MONTH
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)


class PaymentEvent(BaseModel):
    """
    A verified Stripe webhook event.

    Only the envelope is modelled; ``data.object`` stays a plain dict because
    its shape depends on the event type.
    """

    id: str
    type: str
    created: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}
