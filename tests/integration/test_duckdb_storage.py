"""
Integration tests for DuckDBStorage against a temporary database file.
"""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from decimal import Decimal

import pytest
from pydantic import SecretStr

from steadybooks.connectors.webhook_handler import WebhookReconciler
from steadybooks.models.connection import DashboardConfig
from steadybooks.models.enums import ConnectionStatus, DateRangeType, SubscriptionPlan, SubscriptionStatus
from steadybooks.resilience.policy import TransientError
from steadybooks.storage.base import StorageError
from steadybooks.storage.duckdb_storage import DuckDBStorage
from steadybooks.storage.resilient import ResilientStore
from tests.conftest import (
    NOW,
    make_connection,
    make_grant,
    make_payment_event,
    make_policy,
    make_stripe_subscription,
    make_subscription,
    make_tenant,
)


class TestConnections:
    """Test connection persistence."""

    def test_save_and_load_connection(self, duckdb_storage):
        connection = make_connection(last_sync_at=NOW - timedelta(hours=2))
        duckdb_storage.save_connection(connection)

        loaded = duckdb_storage.load_connection("dash-1")

        assert loaded.id == connection.id
        assert loaded.access_token.get_secret_value() == "old-access"
        assert loaded.refresh_token.get_secret_value() == "old-refresh"
        assert loaded.access_token_expires_at == connection.access_token_expires_at
        assert loaded.last_sync_at == connection.last_sync_at
        assert loaded.status == ConnectionStatus.CONNECTED
        assert loaded.access_token_expires_at.tzinfo is not None

    def test_load_missing_connection_returns_none(self, duckdb_storage):
        assert duckdb_storage.load_connection("nope") is None

    def test_save_replaces_by_dashboard(self, duckdb_storage):
        connection = make_connection()
        duckdb_storage.save_connection(connection)
        duckdb_storage.save_connection(connection.with_tokens(make_grant(access_token="rotated"), now=NOW))

        with duckdb_storage._get_connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM connections").fetchone()[0]
        assert count == 1
        assert duckdb_storage.load_connection("dash-1").access_token.get_secret_value() == "rotated"

    def test_retired_connection_persists_empty_tokens(self, duckdb_storage):
        duckdb_storage.save_connection(make_connection().retired(now=NOW))

        loaded = duckdb_storage.load_connection("dash-1")
        assert loaded.status == ConnectionStatus.DISCONNECTED
        assert loaded.access_token == SecretStr("")
        assert not loaded.is_active

    def test_data_survives_reopen(self, tmp_path):
        path = str(tmp_path / "reopen.duckdb")
        storage = DuckDBStorage(db_path=path)
        storage.save_connection(make_connection())
        storage.close()

        reopened = DuckDBStorage(db_path=path)
        try:
            assert reopened.load_connection("dash-1").realm_id == "9130357992"
        finally:
            reopened.close()


class TestDashboardConfig:
    def test_missing_config_returns_none(self, duckdb_storage):
        assert duckdb_storage.load_dashboard_config("dash-1") is None

    def test_register_and_load_config(self, duckdb_storage):
        config = DashboardConfig(
            dashboard_id="dash-1",
            show_taxes_due=False,
            date_range=DateRangeType.CUSTOM,
            custom_start_date=date(2026, 1, 1),
            custom_end_date=date(2026, 2, 28),
        )
        duckdb_storage.register_dashboard(config)
        duckdb_storage.register_dashboard(config)

        assert duckdb_storage.load_dashboard_config("dash-1") == config


class TestBilling:
    """Test tenant and subscription persistence."""

    def test_create_and_load_tenant(self, duckdb_storage):
        duckdb_storage.create_tenant(make_tenant("user-1"))
        tenant = duckdb_storage.load_tenant("user-1")
        assert tenant.email == "user-1@example.com"
        assert tenant.current_plan == SubscriptionPlan.FREE_TRIAL

    def test_duplicate_tenant_is_rejected(self, duckdb_storage):
        duckdb_storage.create_tenant(make_tenant("user-1"))
        with pytest.raises(StorageError):
            duckdb_storage.create_tenant(make_tenant("user-1"))

    def test_update_tenant_plan_and_customer(self, duckdb_storage):
        duckdb_storage.create_tenant(make_tenant("user-1"))
        duckdb_storage.update_tenant_plan("user-1", SubscriptionPlan.ENTERPRISE)
        duckdb_storage.set_tenant_customer_id("user-1", "cus_42")

        tenant = duckdb_storage.load_tenant("user-1")
        assert tenant.current_plan == SubscriptionPlan.ENTERPRISE
        assert tenant.stripe_customer_id == "cus_42"

    def test_upsert_and_load_subscription_by_either_key(self, duckdb_storage):
        subscription = make_subscription(
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=31),
        )
        duckdb_storage.upsert_subscription(subscription)

        by_stripe = duckdb_storage.load_subscription(stripe_subscription_id="sub_123")
        by_tenant = duckdb_storage.load_subscription(tenant_id="user-1")

        assert by_stripe == by_tenant
        assert by_stripe.amount == Decimal("49.00")
        assert by_stripe.current_period_end == NOW + timedelta(days=31)

    def test_upsert_updates_in_place(self, duckdb_storage):
        subscription = make_subscription()
        duckdb_storage.upsert_subscription(subscription)
        duckdb_storage.upsert_subscription(subscription.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))

        with duckdb_storage._get_connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]
        assert count == 1
        assert duckdb_storage.load_subscription(tenant_id="user-1").status == SubscriptionStatus.PAST_DUE

    def test_stripe_subscription_id_is_unique_across_tenants(self, duckdb_storage):
        duckdb_storage.upsert_subscription(make_subscription(tenant_id="user-1"))
        with pytest.raises(StorageError):
            duckdb_storage.upsert_subscription(make_subscription(tenant_id="user-2", id="other-local-id"))

    def test_one_subscription_per_tenant(self, duckdb_storage):
        duckdb_storage.upsert_subscription(make_subscription(stripe_subscription_id="sub_1"))
        with pytest.raises(StorageError):
            duckdb_storage.upsert_subscription(make_subscription(stripe_subscription_id="sub_2"))

    @pytest.mark.parametrize("keys", [{}, {"stripe_subscription_id": "sub_1", "tenant_id": "user-1"}])
    def test_load_subscription_requires_exactly_one_key(self, duckdb_storage, keys):
        with pytest.raises(ValueError):
            duckdb_storage.load_subscription(**keys)


def _subscription_rows(storage: DuckDBStorage, tenant_id: str) -> int:
    with storage._get_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM subscriptions WHERE tenant_id = ?", [tenant_id]).fetchone()[0]


class TestConcurrency:
    """Writers on several threads and overlapping webhook deliveries."""

    def test_constructor_returns(self, tmp_path):
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(DuckDBStorage, db_path=str(tmp_path / "fresh.duckdb"))
            storage = future.result(timeout=10)
        finally:
            executor.shutdown(wait=False)

        try:
            assert storage.load_connection("dash-1") is None
        finally:
            storage.close()

    def test_parallel_subscription_upserts_keep_one_row(self, duckdb_storage):
        subscription = make_subscription()
        barrier = threading.Barrier(8)

        def write():
            barrier.wait()
            duckdb_storage.upsert_subscription(subscription)

        with ThreadPoolExecutor(max_workers=8) as executor:
            for future in [executor.submit(write) for _ in range(8)]:
                future.result(timeout=10)

        assert _subscription_rows(duckdb_storage, "user-1") == 1

    def test_parallel_connection_saves_keep_one_row(self, duckdb_storage):
        connection = make_connection()
        barrier = threading.Barrier(8)

        def write():
            barrier.wait()
            duckdb_storage.save_connection(connection)

        with ThreadPoolExecutor(max_workers=8) as executor:
            for future in [executor.submit(write) for _ in range(8)]:
                future.result(timeout=10)

        with duckdb_storage._get_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM connections").fetchone()[0] == 1

    @pytest.mark.asyncio
    async def test_overlapping_webhook_deliveries_store_one_subscription(self, duckdb_storage):
        store = ResilientStore(
            duckdb_storage, make_policy(name="storage", transient=(asyncio.TimeoutError, TransientError))
        )
        reconciler = WebhookReconciler(store)

        for index in range(10):
            tenant_id = f"user-{index}"
            duckdb_storage.create_tenant(make_tenant(tenant_id))
            event = make_payment_event(
                "customer.subscription.created",
                make_stripe_subscription(subscription_id=f"sub_{index}", tenant_id=tenant_id),
            )

            await asyncio.gather(reconciler.handle(event), reconciler.handle(event))

            assert _subscription_rows(duckdb_storage, tenant_id) == 1

    @pytest.mark.asyncio
    async def test_timed_out_write_and_its_retry_leave_one_row(self, duckdb_storage, monkeypatch):
        upsert = duckdb_storage.upsert_subscription
        calls = []

        def slow_first_upsert(subscription):
            calls.append(subscription.id)
            if len(calls) == 1:
                time.sleep(0.3)
            upsert(subscription)

        monkeypatch.setattr(duckdb_storage, "upsert_subscription", slow_first_upsert)
        store = ResilientStore(
            duckdb_storage,
            make_policy(name="storage", timeout=0.1, transient=(asyncio.TimeoutError, TransientError)),
        )
        subscription = make_subscription()

        await store.upsert_subscription(subscription)
        # Let the abandoned first attempt finish its write.
        await asyncio.sleep(0.5)

        assert len(calls) == 2
        assert _subscription_rows(duckdb_storage, "user-1") == 1
        assert duckdb_storage.load_subscription(tenant_id="user-1").id == subscription.id
