"""
Pytest configuration and shared fixtures for the SteadyBooks test suite.

Provides model factories, an in-memory MockStorage, a controllable clock,
zero-delay resilience policies and httpx.MockTransport helpers so unit tests
never touch the network or disk.
"""

import asyncio
import hashlib
import hmac
import json
import os
import tempfile
import time
import uuid as _uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
import pytest

# Set testing environment BEFORE importing the app
_test_db_path = os.path.join(tempfile.gettempdir(), f"steadybooks_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["INTUIT_CLIENT_ID"] = "test-client-id"
os.environ["INTUIT_CLIENT_SECRET"] = "test-client-secret"
os.environ["LOG_LEVEL"] = "warning"

from pydantic import SecretStr  # noqa: E402

from steadybooks.config import Settings  # noqa: E402
from steadybooks.models.billing import PaymentEvent, Subscription, Tenant  # noqa: E402
from steadybooks.models.connection import Connection, DashboardConfig, TokenGrant  # noqa: E402
from steadybooks.models.enums import ConnectionStatus, SubscriptionPlan  # noqa: E402
from steadybooks.resilience.policy import (  # noqa: E402
    CircuitBreaker,
    CircuitBreakerConfig,
    ResiliencePolicy,
    RetryConfig,
    TransientError,
)
from steadybooks.storage.base import StorageBackend, check_single_key  # noqa: E402
from steadybooks.storage.resilient import ResilientStore  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock and sleep doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock usable as both a datetime and a monotonic source."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Pydantic model factories
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment's .env file."""
    defaults = dict(
        _env_file=None,
        intuit_client_id="test-client-id",
        intuit_client_secret="test-client-secret",
        intuit_redirect_uri="http://testserver/api/v1/quickbooks/callback",
        intuit_env="sandbox",
        stripe_webhook_secret=WEBHOOK_SECRET,
        db_path=_test_db_path,
        dev_mode=True,
    )
    defaults.update(overrides)
    return Settings(**defaults)


def make_grant(
    access_token: str = "new-access",
    refresh_token: str = "new-refresh",
    now: datetime = NOW,
    expires_in: int = 3600,
) -> TokenGrant:
    return TokenGrant(
        access_token=SecretStr(access_token),
        refresh_token=SecretStr(refresh_token),
        access_token_expires_at=now + timedelta(seconds=expires_in),
        refresh_token_expires_at=now + timedelta(days=100),
    )


def make_connection(
    dashboard_id: str = "dash-1",
    realm_id: str = "9130357992",
    status: ConnectionStatus = ConnectionStatus.CONNECTED,
    access_expires_in: timedelta = timedelta(hours=1),
    now: datetime = NOW,
    **overrides,
) -> Connection:
    """Factory function for creating test Connection objects."""
    defaults = dict(
        id=f"conn-{dashboard_id}",
        dashboard_id=dashboard_id,
        realm_id=realm_id,
        company_name="Craig's Design and Landscaping",
        access_token=SecretStr("old-access"),
        refresh_token=SecretStr("old-refresh"),
        access_token_expires_at=now + access_expires_in,
        refresh_token_expires_at=now + timedelta(days=90),
        status=status,
        connected_at=now - timedelta(days=10),
        modified_at=now - timedelta(days=1),
    )
    defaults.update(overrides)
    return Connection(**defaults)


def make_tenant(tenant_id: str = "user-1", **overrides) -> Tenant:
    defaults = dict(id=tenant_id, email=f"{tenant_id}@example.com")
    defaults.update(overrides)
    return Tenant(**defaults)


def make_subscription(
    tenant_id: str = "user-1",
    stripe_subscription_id: str = "sub_123",
    **overrides,
) -> Subscription:
    defaults = dict(
        id=f"local-{stripe_subscription_id}",
        tenant_id=tenant_id,
        stripe_customer_id="cus_123",
        stripe_subscription_id=stripe_subscription_id,
        stripe_price_id="price_pro_month",
        plan=SubscriptionPlan.PROFESSIONAL,
        amount=Decimal("49.00"),
        created_at=NOW - timedelta(days=30),
        modified_at=NOW - timedelta(days=30),
    )
    defaults.update(overrides)
    return Subscription(**defaults)


def make_stripe_subscription(
    subscription_id: str = "sub_123",
    tenant_id: Optional[str] = "user-1",
    plan: Optional[str] = "Business",
    status: str = "active",
    unit_amount: int = 9900,
    interval: str = "month",
    **overrides,
) -> dict[str, Any]:
    """Stripe subscription object as delivered inside a webhook."""
    metadata: dict[str, str] = {}
    if tenant_id is not None:
        metadata["user_id"] = tenant_id
    if plan is not None:
        metadata["plan"] = plan
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "currency": "usd",
        "metadata": metadata,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_1",
                    "price": {
                        "id": f"price_{interval}",
                        "unit_amount": unit_amount,
                        "currency": "usd",
                        "recurring": {"interval": interval},
                    },
                }
            ],
        },
    }
    obj.update(overrides)
    return obj


def make_payment_event(event_type: str, obj: dict[str, Any], event_id: Optional[str] = None) -> PaymentEvent:
    return PaymentEvent(
        id=event_id or f"evt_{_uuid.uuid4().hex[:12]}",
        type=event_type,
        created=int(NOW.timestamp()),
        data={"object": obj},
    )


def stripe_signature_header(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Compute a Stripe-Signature header the way Stripe signs deliveries."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_body(event_type: str, obj: dict[str, Any], event_id: str = "evt_test") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


# ---------------------------------------------------------------------------
# QuickBooks payload factories
# ---------------------------------------------------------------------------


def qbo_accounts(*accounts: dict[str, Any]) -> dict[str, Any]:
    return {"QueryResponse": {"Account": list(accounts)}, "time": "2026-03-15T05:00:00-07:00"}


def qbo_invoices(*balances: Any) -> dict[str, Any]:
    return {"QueryResponse": {"Invoice": [{"Id": str(i), "Balance": b} for i, b in enumerate(balances)]}}


def pnl_section(header: str, total: str) -> dict[str, Any]:
    return {
        "type": "Section",
        "Header": {"ColData": [{"value": header}, {"value": ""}]},
        "Summary": {"ColData": [{"value": f"Total {header}"}, {"value": total}]},
    }


def pnl_report(*sections: dict[str, Any]) -> dict[str, Any]:
    return {"Header": {"ReportName": "ProfitAndLoss"}, "Rows": {"Row": list(sections)}}


def qbo_router(routes: dict[str, Any], calls: Optional[list[httpx.Request]] = None) -> httpx.MockTransport:
    """
    MockTransport dispatching on a URL substring.

    Route values may be a JSON-able dict (200), an httpx.Response, or a
    callable taking the request and returning either.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        url = str(request.url)
        for fragment, result in routes.items():
            if fragment in url:
                if callable(result):
                    result = result(request)
                if isinstance(result, httpx.Response):
                    # Fresh copy; a Response must not be sent twice.
                    return httpx.Response(result.status_code, headers=result.headers, content=result.content)
                return httpx.Response(200, json=result)
        return httpx.Response(404, json={"Fault": {"Error": [{"Message": "no route"}]}})

    return httpx.MockTransport(handler)


# ---------------------------------------------------------------------------
# Storage double
# ---------------------------------------------------------------------------


class MockStorage(StorageBackend):
    """
    In-memory StorageBackend for unit tests.

    ``failures`` maps a method name to a list of exceptions raised (in order)
    on its next calls, for exercising retry and error paths.
    """

    def __init__(self):
        self.connections: dict[str, Connection] = {}
        self.configs: dict[str, DashboardConfig] = {}
        self.tenants: dict[str, Tenant] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def load_connection(self, dashboard_id):
        self._enter("load_connection")
        return self.connections.get(dashboard_id)

    def save_connection(self, connection):
        self._enter("save_connection")
        self.connections[connection.dashboard_id] = connection

    def load_dashboard_config(self, dashboard_id):
        self._enter("load_dashboard_config")
        return self.configs.get(dashboard_id)

    def load_subscription(self, stripe_subscription_id=None, tenant_id=None):
        self._enter("load_subscription")
        check_single_key(stripe_subscription_id, tenant_id)
        for sub in self.subscriptions.values():
            if stripe_subscription_id is not None and sub.stripe_subscription_id == stripe_subscription_id:
                return sub
            if tenant_id is not None and sub.tenant_id == tenant_id:
                return sub
        return None

    def upsert_subscription(self, subscription):
        self._enter("upsert_subscription")
        self.subscriptions[subscription.id] = subscription

    def load_tenant(self, tenant_id):
        self._enter("load_tenant")
        return self.tenants.get(tenant_id)

    def update_tenant_plan(self, tenant_id, plan):
        self._enter("update_tenant_plan")
        tenant = self.tenants.get(tenant_id)
        if tenant is not None:
            self.tenants[tenant_id] = tenant.model_copy(update={"current_plan": plan})

    def set_tenant_customer_id(self, tenant_id, customer_id):
        self._enter("set_tenant_customer_id")
        tenant = self.tenants.get(tenant_id)
        if tenant is not None:
            self.tenants[tenant_id] = tenant.model_copy(update={"stripe_customer_id": customer_id})


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------


def make_policy(
    name: str = "test",
    max_attempts: int = 3,
    timeout: Optional[float] = 5.0,
    transient: tuple = (httpx.TransportError, asyncio.TimeoutError, TransientError),
    breaker: Optional[CircuitBreaker] = None,
    sleep: Optional[Callable] = None,
) -> ResiliencePolicy:
    """Policy with zero backoff so retries do not slow tests down."""
    return ResiliencePolicy(
        name=name,
        retry=RetryConfig(max_attempts=max_attempts, base_delay=0.0, jitter=False),
        timeout=timeout,
        transient_exceptions=transient,
        breaker=breaker,
        sleep=sleep or RecordingSleep(),
    )


def make_breaker(clock: FakeClock, **overrides) -> CircuitBreaker:
    config = dict(failure_ratio=0.5, sampling_duration=30, minimum_throughput=10, break_duration=30)
    config.update(overrides)
    return CircuitBreaker(CircuitBreakerConfig(**config), name="test", clock=clock.monotonic)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def mock_storage():
    """Fresh MockStorage instance for each test."""
    return MockStorage()


@pytest.fixture
def store(mock_storage):
    """ResilientStore over MockStorage with an instant storage policy."""
    return ResilientStore(mock_storage, make_policy(name="storage", transient=(asyncio.TimeoutError, TransientError)))


@pytest.fixture
def sample_connection():
    return make_connection()


@pytest.fixture
def sample_realm_id():
    """Sample QuickBooks realm ID."""
    return "9130357992"


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def default_qbo_routes() -> dict[str, Any]:
    """Healthy Intuit responses keyed by URL fragment (first match wins)."""
    return {
        "oauth2/v1/tokens": {
            "access_token": "api-access",
            "refresh_token": "api-refresh",
            "token_type": "bearer",
            "expires_in": 3600,
            "x_refresh_token_expires_in": 8640000,
        },
        "companyinfo": {"CompanyInfo": {"CompanyName": "Sandbox Company_US_1"}},
        "ProfitAndLoss": pnl_report(pnl_section("Income", "8000.00"), pnl_section("Expenses", "6000.00")),
        "Invoice": qbo_invoices("400.00"),
        "tax": qbo_accounts({"Name": "Sales Tax Payable", "CurrentBalance": -80}),
        "/query": qbo_accounts({"AccountType": "Bank", "AccountSubType": "Checking", "CurrentBalance": 12000}),
    }


@pytest.fixture
def qbo_routes():
    """Mutable route table behind the integration HTTP client."""
    return default_qbo_routes()


@pytest.fixture
def duckdb_storage(tmp_path):
    from steadybooks.storage.duckdb_storage import DuckDBStorage

    storage = DuckDBStorage(db_path=str(tmp_path / "steadybooks.duckdb"))
    yield storage
    storage.close()


@pytest.fixture
def client(settings, duckdb_storage, qbo_routes):
    """FastAPI test client wired to DuckDB and a mocked Intuit API."""
    from fastapi.testclient import TestClient

    from steadybooks.dependencies import build_services
    from steadybooks.main import create_app

    services = build_services(
        settings,
        duckdb_storage,
        http_client=httpx.AsyncClient(transport=qbo_router(qbo_routes)),
        outbound_policy=make_policy(name="outbound_api"),
        storage_policy=make_policy(name="storage", transient=(asyncio.TimeoutError, TransientError)),
    )
    with TestClient(create_app(services=services)) as c:
        yield c
