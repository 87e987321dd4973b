"""
Pure parsers for QuickBooks query and report payloads.

Nothing here performs I/O. Every parser tolerates missing sections and
non-numeric values: they contribute zero rather than raising, because a
partially populated company file is normal in QuickBooks.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from steadybooks.models.snapshot import ZERO, CompanyInfo, ProfitLoss

CASH_ACCOUNT_TYPES = frozenset({"Bank", "Other Current Asset"})
CASH_ACCOUNT_SUBTYPES = frozenset({"CashOnHand", "Checking", "Savings"})

REVENUE_KEYWORDS = ("income", "revenue")
EXPENSE_KEYWORDS = ("expense", "cost")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a QuickBooks amount (number or numeric string) into a Decimal."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def query_entities(payload: dict[str, Any], entity: str) -> list[dict[str, Any]]:
    """Return ``QueryResponse.<entity>`` as a list, or [] when absent."""
    response = payload.get("QueryResponse")
    if not isinstance(response, dict):
        return []
    rows = response.get(entity)
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def _sum(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for value in values:
        amount = to_decimal(value)
        if amount is not None:
            total += amount
    return total


def parse_cash_balance(payload: dict[str, Any]) -> Decimal:
    accounts = query_entities(payload, "Account")
    return _sum(
        account.get("CurrentBalance")
        for account in accounts
        if account.get("AccountType") in CASH_ACCOUNT_TYPES
        and account.get("AccountSubType") in CASH_ACCOUNT_SUBTYPES
    )


def parse_tax_liability(payload: dict[str, Any]) -> Decimal:
    """Sum of absolute balances of liability accounts whose name mentions tax."""
    total = ZERO
    for account in query_entities(payload, "Account"):
        name = account.get("Name")
        if not isinstance(name, str) or "tax" not in name.lower():
            continue
        amount = to_decimal(account.get("CurrentBalance"))
        if amount is not None:
            total += abs(amount)
    return total


def parse_outstanding_invoices(payload: dict[str, Any]) -> Decimal:
    return _sum(invoice.get("Balance") for invoice in query_entities(payload, "Invoice"))


def _first_col_value(section: dict[str, Any], key: str, index: int) -> Optional[Any]:
    block = section.get(key)
    if not isinstance(block, dict):
        return None
    cols = block.get("ColData")
    if not isinstance(cols, list) or len(cols) <= index or not isinstance(cols[index], dict):
        return None
    return cols[index].get("value")


def parse_profit_and_loss(report: dict[str, Any]) -> ProfitLoss:
    """
    Extract revenue and expenses from a ProfitAndLoss report.

    Walks the top-level ``Rows.Row`` sections. A section's header text decides
    its bucket ("income"/"revenue" before "expense"/"cost", case-insensitive)
    and its ``Summary.ColData[1].value`` is the section total. Expense totals
    are taken as absolute values.

    Args:
        report: Decoded ProfitAndLoss report JSON

    Returns:
        ProfitLoss with profit = revenue - expenses
    """
    rows = report.get("Rows")
    sections = rows.get("Row") if isinstance(rows, dict) else None
    if not isinstance(sections, list):
        return ProfitLoss()

    revenue = ZERO
    expenses = ZERO

    for section in sections:
        if not isinstance(section, dict):
            continue

        header = _first_col_value(section, "Header", 0)
        if not isinstance(header, str):
            continue

        amount = to_decimal(_first_col_value(section, "Summary", 1))
        if amount is None:
            continue

        label = header.lower()
        if any(keyword in label for keyword in REVENUE_KEYWORDS):
            revenue += amount
        elif any(keyword in label for keyword in EXPENSE_KEYWORDS):
            expenses += abs(amount)

    return ProfitLoss(revenue=revenue, expenses=expenses)


def parse_company_info(payload: dict[str, Any]) -> Optional[CompanyInfo]:
    info = payload.get("CompanyInfo")
    if not isinstance(info, dict):
        return None

    name = info.get("CompanyName")
    address = info.get("CompanyAddr") if isinstance(info.get("CompanyAddr"), dict) else {}
    return CompanyInfo(
        company_name=name if isinstance(name, str) else "",
        legal_name=info.get("LegalName") if isinstance(info.get("LegalName"), str) else None,
        country=address.get("Country") if isinstance(address.get("Country"), str) else None,
    )
