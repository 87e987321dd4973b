"""
Connection and dashboard configuration models.

A Connection holds one dashboard's QuickBooks OAuth2 credentials and health.
Token fields are SecretStr so they never appear in reprs, logs or API
responses. Tokens change only through Connection.with_tokens, which swaps the
access token, refresh token and both expiries in a single model copy.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .enums import ConnectionStatus, DateRangeType


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TokenGrant(BaseModel):
    """
    Result of a successful authorization-code exchange or refresh grant.

    Attributes:
        access_token: Short-lived bearer token for API calls
        refresh_token: Long-lived token used to obtain new access tokens
        token_type: Token type reported by the provider (normally "bearer")
        access_token_expires_at: Absolute UTC expiry of the access token
        refresh_token_expires_at: Absolute UTC expiry of the refresh token
    """

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr
    token_type: str = "bearer"
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class Connection(BaseModel):
    """
    A dashboard's link to one QuickBooks company.

    Attributes:
        id: Local connection identifier
        dashboard_id: Owning dashboard; at most one connection per dashboard
        realm_id: QuickBooks company ID
        company_name: Company name reported by CompanyInfo
        access_token: Current bearer token (empty once retired)
        refresh_token: Current refresh token (empty once retired)
        access_token_expires_at: Access token expiry (UTC)
        refresh_token_expires_at: Refresh token expiry (UTC)
        status: Connection health
        last_error: Last failure message shown to the dashboard owner
        last_sync_at: When figures were last pulled successfully
        connected_at: When the connection was first authorized
        modified_at: Last persisted change
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Local connection ID")
    dashboard_id: str = Field(description="Owning dashboard ID")
    realm_id: str = Field(description="QuickBooks company ID")
    company_name: str = Field(default="Unknown Company", description="QuickBooks company name")
    access_token: SecretStr = Field(default=SecretStr(""), description="OAuth2 access token")
    refresh_token: SecretStr = Field(default=SecretStr(""), description="OAuth2 refresh token")
    access_token_expires_at: datetime = Field(default_factory=utc_now)
    refresh_token_expires_at: datetime = Field(default_factory=utc_now)
    status: ConnectionStatus = Field(default=ConnectionStatus.CONNECTED)
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    connected_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token.get_secret_value() and self.refresh_token.get_secret_value())

    @property
    def is_active(self) -> bool:
        """Whether the connection can be synced without re-authorization."""
        return self.has_tokens and self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.ERROR)

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the access token expires within ``margin`` of ``now``."""
        now = now or utc_now()
        return self.access_token_expires_at - now <= margin

    def with_tokens(self, grant: TokenGrant, now: Optional[datetime] = None) -> "Connection":
        """Return a copy holding the grant's tokens and expiries, marked connected."""
        return self.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token,
                "access_token_expires_at": grant.access_token_expires_at,
                "refresh_token_expires_at": grant.refresh_token_expires_at,
                "status": ConnectionStatus.CONNECTED,
                "last_error": None,
                "modified_at": now or utc_now(),
            }
        )

    def with_status(
        self,
        status: ConnectionStatus,
        last_error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Connection":
        return self.model_copy(
            update={"status": status, "last_error": last_error, "modified_at": now or utc_now()}
        )

    def synced(self, now: Optional[datetime] = None) -> "Connection":
        """Return a copy recording a successful sync."""
        now = now or utc_now()
        return self.model_copy(
            update={
                "last_sync_at": now,
                "status": ConnectionStatus.CONNECTED,
                "last_error": None,
                "modified_at": now,
            }
        )

    def retired(self, now: Optional[datetime] = None) -> "Connection":
        """Return the same connection with tokens cleared and status disconnected."""
        return self.model_copy(
            update={
                "access_token": SecretStr(""),
                "refresh_token": SecretStr(""),
                "status": ConnectionStatus.DISCONNECTED,
                "last_error": None,
                "modified_at": now or utc_now(),
            }
        )


class DashboardConfig(BaseModel):
    """
    Per-dashboard figure toggles and reporting period.

    A dashboard without a stored config uses these defaults.
    """

    dashboard_id: str
    show_cash_balance: bool = True
    show_profit: bool = True
    show_taxes_due: bool = True
    show_outstanding_invoices: bool = True
    date_range: DateRangeType = DateRangeType.THIS_MONTH
    custom_start_date: Optional[date] = None
    custom_end_date: Optional[date] = None


def resolve_date_range(config: DashboardConfig, today: date) -> tuple[date, date]:
    """
    Resolve a dashboard's reporting period to concrete dates.

    Args:
        config: Dashboard configuration
        today: Reference date (injected for testability)

    Returns:
        Inclusive (start, end) date pair
    """
    first_of_month = today.replace(day=1)

    if config.date_range == DateRangeType.LAST_MONTH:
        last_of_previous = first_of_month - timedelta(days=1)
        return last_of_previous.replace(day=1), last_of_previous

    if config.date_range == DateRangeType.YEAR_TO_DATE:
        return date(today.year, 1, 1), today

    if (
        config.date_range == DateRangeType.CUSTOM
        and config.custom_start_date is not None
        and config.custom_end_date is not None
    ):
        return config.custom_start_date, config.custom_end_date

    return first_of_month, today
