"""
Stripe webhook handling.

Billing state is mirrored locally from Stripe webhooks:
1. Verify the Stripe-Signature header against the raw body
2. Parse the envelope into a PaymentEvent
3. Dispatch on the event type and upsert the tenant's subscription

Handlers are idempotent: replaying an event rewrites the same values.
Deliveries can arrive out of order; the last delivery processed wins.
Writes for one tenant are serialized so concurrent deliveries of the
same event never create two subscription records.
Storage failures propagate so the HTTP layer answers 500 and Stripe
redelivers; events that cannot be matched to a tenant are acknowledged
and ignored.
"""

import asyncio
import calendar
import weakref
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Union

import stripe
import structlog
from pydantic import ValidationError

from steadybooks.models.billing import PaymentEvent, Subscription
from steadybooks.models.connection import utc_now
from steadybooks.models.enums import BillingInterval, SubscriptionPlan, SubscriptionStatus
from steadybooks.storage.resilient import ResilientStore

logger = structlog.get_logger()


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


class MalformedWebhookError(Exception):
    """Raised when a correctly signed webhook body cannot be parsed."""

    pass


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"


_STATUS_MAP = {status.value: status for status in SubscriptionStatus}


def map_subscription_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status to the local enum; unknown values map to ACTIVE."""
    if not isinstance(stripe_status, str):
        return SubscriptionStatus.ACTIVE
    return _STATUS_MAP.get(stripe_status.strip().lower(), SubscriptionStatus.ACTIVE)


class StripeSignatureVerifier:
    """
    Verifies Stripe webhook signatures and parses the event envelope.

    Attributes:
        secret: Endpoint signing secret (``whsec_...``)
        tolerance: Maximum accepted age of the signed timestamp, in seconds
    """

    def __init__(self, secret: str, tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """
        Verify a delivery and return the parsed event.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            Parsed PaymentEvent

        Raises:
            WebhookVerificationError: Missing secret or header, bad signature,
                or timestamp outside the tolerance
            MalformedWebhookError: Signed body that is not a valid event
        """
        if not self.secret:
            raise WebhookVerificationError("Webhook signing secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedWebhookError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_signature_invalid", error=str(e))
            raise WebhookVerificationError(str(e)) from e

        try:
            return PaymentEvent.model_validate_json(body)
        except ValidationError as e:
            raise MalformedWebhookError("Webhook body is not a valid Stripe event") from e


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("stripe_timestamp_out_of_range", value=value)
        return None


def _text(value: Any) -> Optional[str]:
    """Return a non-empty string field, or None for anything else."""
    if isinstance(value, str) and value:
        return value
    return None


def _add_interval(start: datetime, interval: BillingInterval) -> datetime:
    months = 12 if interval == BillingInterval.YEAR else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    if year > datetime.max.year:
        return start
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _object_id(value: Union[str, dict, None]) -> Optional[str]:
    """Resolve a Stripe reference that may be an id string or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = obj.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _first_price(obj: dict[str, Any]) -> dict[str, Any]:
    price = _first_item(obj).get("price")
    return price if isinstance(price, dict) else {}


class WebhookReconciler:
    """
    Applies verified Stripe events to local subscription records.

    Attributes:
        store: Async storage facade
    """

    def __init__(self, store: ResilientStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock
        # Subscription writes for one tenant are read-modify-write; run them one at a time.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
        }

    async def handle(self, event: PaymentEvent) -> ReconcileOutcome:
        """
        Apply one event.

        Args:
            event: Verified Stripe event

        Returns:
            APPLIED if local state was written, IGNORED otherwise

        Raises:
            StorageError: If persistence fails after retries
        """
        log = logger.bind(event_id=event.id, event_type=event.type)
        handler = self._handlers.get(event.type)
        if handler is None:
            log.info("stripe_event_unhandled")
            return ReconcileOutcome.IGNORED

        outcome = await handler(event.object)
        log.info("stripe_event_reconciled", outcome=outcome.value)
        return outcome

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def _checkout_completed(self, session: dict[str, Any]) -> ReconcileOutcome:
        tenant_id = _text(session.get("client_reference_id")) or _text(_metadata(session).get("user_id"))
        if not tenant_id:
            logger.warning("checkout_completed_without_tenant")
            return ReconcileOutcome.IGNORED

        tenant = await self.store.load_tenant(tenant_id)
        if tenant is None:
            logger.warning("checkout_tenant_not_found", tenant_id=tenant_id)
            return ReconcileOutcome.IGNORED

        customer_id = _object_id(session.get("customer"))
        if customer_id is None:
            logger.warning("checkout_completed_without_customer", tenant_id=tenant_id)
            return ReconcileOutcome.IGNORED

        await self.store.set_tenant_customer_id(tenant_id, customer_id)
        logger.info(
            "checkout_completed",
            tenant_id=tenant_id,
            stripe_subscription_id=_object_id(session.get("subscription")),
        )
        return ReconcileOutcome.APPLIED

    async def _subscription_changed(self, obj: dict[str, Any]) -> ReconcileOutcome:
        metadata = _metadata(obj)
        tenant_id = _text(metadata.get("user_id"))
        stripe_subscription_id = _text(obj.get("id"))
        if tenant_id is None or stripe_subscription_id is None:
            logger.warning("subscription_event_without_tenant", stripe_subscription_id=stripe_subscription_id)
            return ReconcileOutcome.IGNORED

        tenant = await self.store.load_tenant(tenant_id)
        if tenant is None:
            logger.warning("subscription_tenant_not_found", tenant_id=tenant_id)
            return ReconcileOutcome.IGNORED

        now = self._clock()
        plan = SubscriptionPlan.parse(metadata.get("plan"))
        price = _first_price(obj)
        recurring = price.get("recurring") if isinstance(price.get("recurring"), dict) else {}
        interval = BillingInterval.YEAR if recurring.get("interval") == "year" else BillingInterval.MONTH
        unit_amount = price.get("unit_amount")
        if isinstance(unit_amount, int) and not isinstance(unit_amount, bool):
            amount = Decimal(unit_amount) / 100
        else:
            amount = Decimal("0")
        status = map_subscription_status(obj.get("status"))

        item = _first_item(obj)
        period_start = (
            _timestamp(obj.get("current_period_start"))
            or _timestamp(item.get("current_period_start"))
            or now
        )
        period_end = (
            _timestamp(obj.get("current_period_end"))
            or _timestamp(item.get("current_period_end"))
            or _add_interval(period_start, interval)
        )

        fields = {
            "stripe_customer_id": _object_id(obj.get("customer")),
            "stripe_subscription_id": stripe_subscription_id,
            "stripe_price_id": _text(price.get("id")),
            "plan": plan,
            "status": status,
            "amount": amount,
            "currency": _text(obj.get("currency")) or _text(price.get("currency")) or "usd",
            "interval": interval,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at": _timestamp(obj.get("cancel_at")),
            "canceled_at": _timestamp(obj.get("canceled_at")),
            "trial_start": _timestamp(obj.get("trial_start")),
            "trial_end": _timestamp(obj.get("trial_end")),
            "modified_at": now,
        }

        # A canceled subscription no longer entitles the tenant to its paid plan.
        tenant_plan = SubscriptionPlan.FREE_TRIAL if status == SubscriptionStatus.CANCELED else plan

        async with self._lock_for(tenant_id):
            existing = await self.store.load_subscription(tenant_id=tenant_id)
            if existing is None:
                subscription = Subscription(tenant_id=tenant_id, created_at=now, **fields)
            else:
                subscription = existing.model_copy(update=fields)

            await self.store.upsert_subscription(subscription)
            await self.store.update_tenant_plan(tenant_id, tenant_plan)

        logger.info(
            "subscription_reconciled",
            tenant_id=tenant_id,
            stripe_subscription_id=stripe_subscription_id,
            status=subscription.status.value,
            plan=tenant_plan.value,
            created=existing is None,
        )
        return ReconcileOutcome.APPLIED

    async def _find_subscription(self, stripe_subscription_id: str) -> Optional[Subscription]:
        """Look up a subscription by Stripe ID, logging when it is unknown."""
        found = await self.store.load_subscription(stripe_subscription_id=stripe_subscription_id)
        if found is None:
            logger.warning("subscription_not_found", stripe_subscription_id=stripe_subscription_id)
        return found

    async def _subscription_deleted(self, obj: dict[str, Any]) -> ReconcileOutcome:
        stripe_subscription_id = _text(obj.get("id"))
        if stripe_subscription_id is None:
            return ReconcileOutcome.IGNORED

        found = await self._find_subscription(stripe_subscription_id)
        if found is None:
            return ReconcileOutcome.IGNORED

        async with self._lock_for(found.tenant_id):
            existing = await self.store.load_subscription(stripe_subscription_id=stripe_subscription_id)
            if existing is None:
                return ReconcileOutcome.IGNORED
            now = self._clock()
            await self.store.upsert_subscription(
                existing.model_copy(
                    update={"status": SubscriptionStatus.CANCELED, "canceled_at": now, "modified_at": now}
                )
            )
            await self.store.update_tenant_plan(existing.tenant_id, SubscriptionPlan.FREE_TRIAL)

        logger.info(
            "subscription_canceled",
            tenant_id=existing.tenant_id,
            stripe_subscription_id=stripe_subscription_id,
        )
        return ReconcileOutcome.APPLIED

    async def _invoice_paid(self, invoice: dict[str, Any]) -> ReconcileOutcome:
        return await self._set_status_from_invoice(invoice, SubscriptionStatus.ACTIVE)

    async def _invoice_failed(self, invoice: dict[str, Any]) -> ReconcileOutcome:
        return await self._set_status_from_invoice(invoice, SubscriptionStatus.PAST_DUE)

    async def _set_status_from_invoice(
        self, invoice: dict[str, Any], status: SubscriptionStatus
    ) -> ReconcileOutcome:
        stripe_subscription_id = _object_id(invoice.get("subscription"))
        if stripe_subscription_id is None:
            # Newer API versions nest the reference under parent.subscription_details.
            parent = invoice.get("parent") if isinstance(invoice.get("parent"), dict) else {}
            details = parent.get("subscription_details")
            if isinstance(details, dict):
                stripe_subscription_id = _object_id(details.get("subscription"))
        if stripe_subscription_id is None:
            return ReconcileOutcome.IGNORED

        found = await self._find_subscription(stripe_subscription_id)
        if found is None:
            return ReconcileOutcome.IGNORED

        async with self._lock_for(found.tenant_id):
            existing = await self.store.load_subscription(stripe_subscription_id=stripe_subscription_id)
            if existing is None:
                return ReconcileOutcome.IGNORED
            await self.store.upsert_subscription(
                existing.model_copy(update={"status": status, "modified_at": self._clock()})
            )
        log_method = logger.info if status == SubscriptionStatus.ACTIVE else logger.warning
        log_method(
            "invoice_payment_reconciled",
            tenant_id=existing.tenant_id,
            stripe_subscription_id=stripe_subscription_id,
            status=status.value,
        )
        return ReconcileOutcome.APPLIED
