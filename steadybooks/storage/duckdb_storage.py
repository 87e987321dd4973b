"""
DuckDB storage implementation for the SteadyBooks integration layer.

Persists connections, dashboard configuration, tenants and subscriptions in a
local DuckDB file.

Key features:
- Thread-safe access with per-thread connections
- Idempotent schema creation
- Transient DuckDB failures (I/O errors, write-write conflicts) surfaced as
  TransientStorageError so the storage policy retries them
- Uniqueness of dashboard connections and Stripe subscription IDs enforced
  inside a transaction rather than with indexes, because DuckDB rejects
  updates to rows covered by a unique index in some versions; those
  transactions hold a backend-wide write lock
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import duckdb
import structlog
from pydantic import SecretStr

from steadybooks.models.billing import Subscription, Tenant
from steadybooks.models.connection import Connection, DashboardConfig
from steadybooks.models.enums import SubscriptionPlan

from .base import StorageBackend, StorageError, TransientStorageError, check_single_key

logger = structlog.get_logger(__name__)

_TRANSIENT_DUCKDB_ERRORS = (duckdb.IOException, duckdb.TransactionException)

_CONNECTION_COLUMNS = (
    "id, dashboard_id, realm_id, company_name, access_token, refresh_token, "
    "access_token_expires_at, refresh_token_expires_at, status, last_error, "
    "last_sync_at, connected_at, modified_at"
)

_SUBSCRIPTION_COLUMNS = (
    "id, tenant_id, stripe_customer_id, stripe_subscription_id, stripe_price_id, "
    "plan, status, amount, currency, billing_interval, current_period_start, "
    "current_period_end, cancel_at, canceled_at, trial_start, trial_end, "
    "created_at, modified_at"
)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _write_lock: Serializes read-check-write transactions across threads
        _connections_lock: Guards the list of opened connections
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/steadybooks.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        # DuckDB snapshot isolation lets two transactions both miss a row and
        # both insert it, so uniqueness checks run under one writer at a time.
        self._write_lock = threading.Lock()
        self._connections_lock = threading.Lock()
        self._initialized = False
        self._connections: list[duckdb.DuckDBPyConnection] = []

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
            except duckdb.Error as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e
            with self._connections_lock:
                self._connections.append(self._local.connection)
            logger.debug("duckdb_connection_created", thread_id=threading.get_ident())

        try:
            yield self._local.connection
        except Exception:
            try:
                self._local.connection.rollback()
            except duckdb.Error as rollback_error:
                # No transaction was open.
                logger.debug("duckdb_rollback_skipped", error=str(rollback_error))
            raise

    @contextmanager
    def _operation(self, name: str, **context: Any) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run one storage operation, translating driver errors to StorageError."""
        try:
            with self._get_connection() as conn:
                yield conn
        except StorageError:
            raise
        except _TRANSIENT_DUCKDB_ERRORS as e:
            logger.warning(f"{name}_transient_failure", error=str(e), **context)
            raise TransientStorageError(f"Transient failure in {name}: {e}") from e
        except duckdb.Error as e:
            logger.error(f"{name}_failed", error=str(e), **context)
            raise StorageError(f"Failed to {name.replace('_', ' ')}: {e}") from e

    def _initialize_schema(self) -> None:
        """
        Create all tables. Idempotent.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS connections (
                            id VARCHAR NOT NULL,
                            dashboard_id VARCHAR NOT NULL,
                            realm_id VARCHAR NOT NULL,
                            company_name VARCHAR NOT NULL,
                            access_token VARCHAR NOT NULL,
                            refresh_token VARCHAR NOT NULL,
                            access_token_expires_at TIMESTAMP NOT NULL,
                            refresh_token_expires_at TIMESTAMP NOT NULL,
                            status VARCHAR NOT NULL,
                            last_error VARCHAR,
                            last_sync_at TIMESTAMP,
                            connected_at TIMESTAMP NOT NULL,
                            modified_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS dashboard_configs (
                            dashboard_id VARCHAR NOT NULL,
                            show_cash_balance BOOLEAN NOT NULL,
                            show_profit BOOLEAN NOT NULL,
                            show_taxes_due BOOLEAN NOT NULL,
                            show_outstanding_invoices BOOLEAN NOT NULL,
                            date_range VARCHAR NOT NULL,
                            custom_start_date DATE,
                            custom_end_date DATE
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS tenants (
                            id VARCHAR NOT NULL,
                            email VARCHAR NOT NULL,
                            current_plan VARCHAR NOT NULL,
                            stripe_customer_id VARCHAR
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS subscriptions (
                            id VARCHAR NOT NULL,
                            tenant_id VARCHAR NOT NULL,
                            stripe_customer_id VARCHAR,
                            stripe_subscription_id VARCHAR NOT NULL,
                            stripe_price_id VARCHAR,
                            plan VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            amount DECIMAL(18, 2) NOT NULL,
                            currency VARCHAR NOT NULL,
                            billing_interval VARCHAR NOT NULL,
                            current_period_start TIMESTAMP,
                            current_period_end TIMESTAMP,
                            cancel_at TIMESTAMP,
                            canceled_at TIMESTAMP,
                            trial_start TIMESTAMP,
                            trial_end TIMESTAMP,
                            created_at TIMESTAMP NOT NULL,
                            modified_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.commit()
                    logger.info("duckdb_schema_initialized", table_count=4)
                    self._initialized = True

            except duckdb.Error as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def close(self) -> None:
        """Close every per-thread connection opened by this backend."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except duckdb.Error as e:
                    logger.debug("duckdb_close_failed", error=str(e))
            self._connections.clear()
        self._local = threading.local()

    # =========================================================================
    # Connections
    # =========================================================================

    def load_connection(self, dashboard_id: str) -> Optional[Connection]:
        with self._operation("load_connection", dashboard_id=dashboard_id) as conn:
            row = conn.execute(
                f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE dashboard_id = ?",
                [dashboard_id],
            ).fetchone()

        if row is None:
            return None

        return Connection(
            id=row[0],
            dashboard_id=row[1],
            realm_id=row[2],
            company_name=row[3],
            access_token=SecretStr(row[4]),
            refresh_token=SecretStr(row[5]),
            access_token_expires_at=_from_db(row[6]),
            refresh_token_expires_at=_from_db(row[7]),
            status=row[8],
            last_error=row[9],
            last_sync_at=_from_db(row[10]),
            connected_at=_from_db(row[11]),
            modified_at=_from_db(row[12]),
        )

    def save_connection(self, connection: Connection) -> None:
        values = [
            connection.id,
            connection.dashboard_id,
            connection.realm_id,
            connection.company_name,
            connection.access_token.get_secret_value(),
            connection.refresh_token.get_secret_value(),
            _to_db(connection.access_token_expires_at),
            _to_db(connection.refresh_token_expires_at),
            connection.status.value,
            connection.last_error,
            _to_db(connection.last_sync_at),
            _to_db(connection.connected_at),
            _to_db(connection.modified_at),
        ]

        with self._write_lock, self._operation(
            "save_connection", dashboard_id=connection.dashboard_id
        ) as conn:
            conn.execute("BEGIN TRANSACTION")
            existing = conn.execute(
                "SELECT 1 FROM connections WHERE dashboard_id = ?", [connection.dashboard_id]
            ).fetchone()

            if existing is None:
                conn.execute(
                    f"INSERT INTO connections ({_CONNECTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    values,
                )
            else:
                conn.execute(
                    """
                    UPDATE connections SET
                        id = ?, dashboard_id = ?, realm_id = ?, company_name = ?,
                        access_token = ?, refresh_token = ?, access_token_expires_at = ?,
                        refresh_token_expires_at = ?, status = ?, last_error = ?,
                        last_sync_at = ?, connected_at = ?, modified_at = ?
                    WHERE dashboard_id = ?
                    """,
                    values + [connection.dashboard_id],
                )
            conn.commit()

        logger.debug(
            "connection_saved",
            dashboard_id=connection.dashboard_id,
            status=connection.status.value,
        )

    def load_dashboard_config(self, dashboard_id: str) -> Optional[DashboardConfig]:
        with self._operation("load_dashboard_config", dashboard_id=dashboard_id) as conn:
            row = conn.execute(
                """
                SELECT dashboard_id, show_cash_balance, show_profit, show_taxes_due,
                       show_outstanding_invoices, date_range, custom_start_date, custom_end_date
                FROM dashboard_configs WHERE dashboard_id = ?
                """,
                [dashboard_id],
            ).fetchone()

        if row is None:
            return None

        return DashboardConfig(
            dashboard_id=row[0],
            show_cash_balance=row[1],
            show_profit=row[2],
            show_taxes_due=row[3],
            show_outstanding_invoices=row[4],
            date_range=row[5],
            custom_start_date=row[6],
            custom_end_date=row[7],
        )

    def register_dashboard(self, config: DashboardConfig) -> None:
        """Insert or replace a dashboard's configuration (seeding helper)."""
        values = [
            config.dashboard_id,
            config.show_cash_balance,
            config.show_profit,
            config.show_taxes_due,
            config.show_outstanding_invoices,
            config.date_range.value,
            config.custom_start_date,
            config.custom_end_date,
        ]
        with self._write_lock, self._operation(
            "register_dashboard", dashboard_id=config.dashboard_id
        ) as conn:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM dashboard_configs WHERE dashboard_id = ?", [config.dashboard_id])
            conn.execute(
                """
                INSERT INTO dashboard_configs (
                    dashboard_id, show_cash_balance, show_profit, show_taxes_due,
                    show_outstanding_invoices, date_range, custom_start_date, custom_end_date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            conn.commit()

        logger.info("dashboard_registered", dashboard_id=config.dashboard_id)

    # =========================================================================
    # Billing
    # =========================================================================

    def load_subscription(
        self,
        stripe_subscription_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        check_single_key(stripe_subscription_id, tenant_id)

        if stripe_subscription_id is not None:
            where, key = "stripe_subscription_id = ?", stripe_subscription_id
        else:
            where, key = "tenant_id = ?", tenant_id

        with self._operation("load_subscription", key=key) as conn:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE {where}",
                [key],
            ).fetchone()

        if row is None:
            return None

        return Subscription(
            id=row[0],
            tenant_id=row[1],
            stripe_customer_id=row[2],
            stripe_subscription_id=row[3],
            stripe_price_id=row[4],
            plan=row[5],
            status=row[6],
            amount=row[7],
            currency=row[8],
            interval=row[9],
            current_period_start=_from_db(row[10]),
            current_period_end=_from_db(row[11]),
            cancel_at=_from_db(row[12]),
            canceled_at=_from_db(row[13]),
            trial_start=_from_db(row[14]),
            trial_end=_from_db(row[15]),
            created_at=_from_db(row[16]),
            modified_at=_from_db(row[17]),
        )

    def upsert_subscription(self, subscription: Subscription) -> None:
        values = [
            subscription.id,
            subscription.tenant_id,
            subscription.stripe_customer_id,
            subscription.stripe_subscription_id,
            subscription.stripe_price_id,
            subscription.plan.value,
            subscription.status.value,
            subscription.amount,
            subscription.currency,
            subscription.interval.value,
            _to_db(subscription.current_period_start),
            _to_db(subscription.current_period_end),
            _to_db(subscription.cancel_at),
            _to_db(subscription.canceled_at),
            _to_db(subscription.trial_start),
            _to_db(subscription.trial_end),
            _to_db(subscription.created_at),
            _to_db(subscription.modified_at),
        ]

        with self._write_lock, self._operation(
            "upsert_subscription",
            stripe_subscription_id=subscription.stripe_subscription_id,
        ) as conn:
            conn.execute("BEGIN TRANSACTION")
            conflict = conn.execute(
                """
                SELECT id FROM subscriptions
                WHERE id != ? AND (stripe_subscription_id = ? OR tenant_id = ?)
                """,
                [subscription.id, subscription.stripe_subscription_id, subscription.tenant_id],
            ).fetchone()
            if conflict is not None:
                conn.rollback()
                logger.error(
                    "subscription_uniqueness_violation",
                    stripe_subscription_id=subscription.stripe_subscription_id,
                    tenant_id=subscription.tenant_id,
                    conflicting_id=conflict[0],
                )
                raise StorageError(
                    "Subscription conflicts with an existing record for this tenant "
                    "or Stripe subscription ID"
                )

            existing = conn.execute(
                "SELECT 1 FROM subscriptions WHERE id = ?", [subscription.id]
            ).fetchone()
            if existing is None:
                conn.execute(
                    f"INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    values,
                )
            else:
                conn.execute(
                    """
                    UPDATE subscriptions SET
                        id = ?, tenant_id = ?, stripe_customer_id = ?, stripe_subscription_id = ?,
                        stripe_price_id = ?, plan = ?, status = ?, amount = ?, currency = ?,
                        billing_interval = ?, current_period_start = ?, current_period_end = ?,
                        cancel_at = ?, canceled_at = ?, trial_start = ?, trial_end = ?,
                        created_at = ?, modified_at = ?
                    WHERE id = ?
                    """,
                    values + [subscription.id],
                )
            conn.commit()

        logger.debug(
            "subscription_upserted",
            stripe_subscription_id=subscription.stripe_subscription_id,
            status=subscription.status.value,
        )

    def create_tenant(self, tenant: Tenant) -> None:
        """Insert a tenant (seeding helper; tenants are owned by account management)."""
        with self._write_lock, self._operation("create_tenant", tenant_id=tenant.id) as conn:
            conn.execute("BEGIN TRANSACTION")
            if conn.execute("SELECT 1 FROM tenants WHERE id = ?", [tenant.id]).fetchone():
                conn.rollback()
                raise StorageError(f"Tenant {tenant.id} already exists")
            conn.execute(
                "INSERT INTO tenants (id, email, current_plan, stripe_customer_id) VALUES (?, ?, ?, ?)",
                [tenant.id, tenant.email, tenant.current_plan.value, tenant.stripe_customer_id],
            )
            conn.commit()

    def load_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._operation("load_tenant", tenant_id=tenant_id) as conn:
            row = conn.execute(
                "SELECT id, email, current_plan, stripe_customer_id FROM tenants WHERE id = ?",
                [tenant_id],
            ).fetchone()

        if row is None:
            return None
        return Tenant(id=row[0], email=row[1], current_plan=row[2], stripe_customer_id=row[3])

    def update_tenant_plan(self, tenant_id: str, plan: SubscriptionPlan) -> None:
        with self._operation("update_tenant_plan", tenant_id=tenant_id) as conn:
            conn.execute("UPDATE tenants SET current_plan = ? WHERE id = ?", [plan.value, tenant_id])
            conn.commit()

    def set_tenant_customer_id(self, tenant_id: str, customer_id: str) -> None:
        with self._operation("set_tenant_customer_id", tenant_id=tenant_id) as conn:
            conn.execute(
                "UPDATE tenants SET stripe_customer_id = ? WHERE id = ?", [customer_id, tenant_id]
            )
            conn.commit()
