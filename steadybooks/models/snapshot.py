"""
Financial figure models produced by a sync.

These are read-only views over QuickBooks data. A FinancialSnapshot is never
persisted; only the connection's last_sync_at records that a sync happened.
"""

from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

ZERO = Decimal("0")


class ProfitLoss(BaseModel):
    """Revenue and expense totals parsed from a ProfitAndLoss report."""

    model_config = ConfigDict(frozen=True)

    revenue: Decimal = ZERO
    expenses: Decimal = ZERO

    @computed_field
    @property
    def profit(self) -> Decimal:
        return self.revenue - self.expenses


class CompanyInfo(BaseModel):
    """Subset of the QuickBooks CompanyInfo entity."""

    model_config = ConfigDict(frozen=True)

    company_name: str
    legal_name: Optional[str] = None
    country: Optional[str] = None


class FinancialSnapshot(BaseModel):
    """
    The dashboard's headline figures at one point in time.

    Attributes:
        cash_balance: Sum of cash-equivalent account balances
        revenue: Income total for the reporting period
        expenses: Expense total for the reporting period (non-negative)
        profit: revenue minus expenses
        taxes_due: Sum of absolute tax liability balances
        outstanding_invoices: Sum of open invoice balances
        synced_at: When the figures were pulled
        margin: Profit as a percentage of revenue, one decimal place
    """

    model_config = ConfigDict(frozen=True)

    cash_balance: Decimal = Field(default=ZERO)
    revenue: Decimal = Field(default=ZERO)
    expenses: Decimal = Field(default=ZERO)
    profit: Decimal = Field(default=ZERO)
    taxes_due: Decimal = Field(default=ZERO)
    outstanding_invoices: Decimal = Field(default=ZERO)
    synced_at: datetime

    @computed_field
    @property
    def margin(self) -> Decimal:
        if self.revenue <= 0:
            return Decimal("0.0")
        return (self.profit / self.revenue * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN)
