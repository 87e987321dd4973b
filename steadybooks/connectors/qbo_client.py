"""
QuickBooks Online API client for dashboard figures.

Read-only access to the four figures a dashboard shows (cash balance,
profit and loss, tax liability, outstanding invoices) plus company info.
Every request is a bearer-token GET through the outbound resilience policy;
payload parsing lives in report_parser so it can be tested without HTTP.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import SecretStr

from steadybooks.models.snapshot import CompanyInfo, ProfitLoss
from steadybooks.resilience.policy import ResiliencePolicy, TransientError

from . import report_parser

logger = structlog.get_logger()

CASH_ACCOUNTS_QUERY = (
    "SELECT * FROM Account WHERE AccountType IN ('Bank', 'Other Current Asset') "
    "AND AccountSubType IN ('CashOnHand', 'Checking', 'Savings')"
)
TAX_ACCOUNTS_QUERY = (
    "SELECT * FROM Account WHERE AccountType = 'Other Current Liability' AND Name LIKE '%tax%'"
)
OPEN_INVOICES_QUERY = "SELECT * FROM Invoice WHERE Balance != '0'"

Token = Union[SecretStr, str]


class QBOAuthError(Exception):
    """Raised when OAuth2 authentication fails."""

    pass


class QBOAPIError(Exception):
    """Raised when a QuickBooks API request fails permanently."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QBOTransientError(QBOAPIError, TransientError):
    """Raised for 5xx and 429 responses; retried by the outbound policy."""

    pass


def _secret(token: Token) -> str:
    return token.get_secret_value() if isinstance(token, SecretStr) else token


class QBOClient:
    """
    QuickBooks Online accounting API client.

    Attributes:
        base_url: API host for the configured environment
        minor_version: API minor version sent with every request
        policy: Outbound resilience policy
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: ResiliencePolicy,
        base_url: str,
        minor_version: int = 65,
    ):
        self._http = http_client
        self.policy = policy
        self.base_url = base_url.rstrip("/")
        self.minor_version = minor_version

    async def _get(
        self,
        access_token: Token,
        realm_id: str,
        endpoint: str,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Make an authenticated GET under the outbound policy.

        Args:
            access_token: Bearer token
            realm_id: QuickBooks company ID
            endpoint: Path below ``/v3/company/<realm>/``
            params: Extra query parameters

        Returns:
            Decoded JSON body

        Raises:
            QBOTransientError: On 5xx/429 after retries are exhausted
            QBOAPIError: On any other non-2xx response or a non-JSON body
            CircuitOpenError: If the outbound breaker is open
        """
        url = f"{self.base_url}/v3/company/{realm_id}/{endpoint}"
        query = {**(params or {}), "minorversion": str(self.minor_version)}
        headers = {
            "Authorization": f"Bearer {_secret(access_token)}",
            "Accept": "application/json",
        }

        async def attempt() -> dict[str, Any]:
            response = await self._http.get(url, params=query, headers=headers)
            return self._decode(response, endpoint)

        return await self.policy.execute(attempt)

    def _decode(self, response: httpx.Response, endpoint: str) -> dict[str, Any]:
        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning("qbo_api_transient_failure", endpoint=endpoint, status_code=status)
            raise QBOTransientError(f"QuickBooks returned {status} for {endpoint}", status)

        if status >= 400:
            logger.error(
                "qbo_api_request_failed",
                endpoint=endpoint,
                status_code=status,
                error=response.text[:500],
            )
            raise QBOAPIError(f"QuickBooks request to {endpoint} failed with {status}", status)

        try:
            payload = response.json()
        except ValueError as e:
            raise QBOAPIError(f"QuickBooks returned invalid JSON for {endpoint}", status) from e

        if not isinstance(payload, dict):
            raise QBOAPIError(f"QuickBooks returned an unexpected body for {endpoint}", status)

        logger.debug("qbo_api_request_success", endpoint=endpoint, status_code=status)
        return payload

    async def query(self, access_token: Token, realm_id: str, statement: str) -> dict[str, Any]:
        """Run a QuickBooks query-language statement."""
        return await self._get(access_token, realm_id, "query", {"query": statement})

    async def get_cash_balance(self, access_token: Token, realm_id: str) -> Decimal:
        payload = await self.query(access_token, realm_id, CASH_ACCOUNTS_QUERY)
        balance = report_parser.parse_cash_balance(payload)
        logger.info("cash_balance_calculated", realm_id=realm_id, balance=str(balance))
        return balance

    async def get_profit_and_loss(
        self,
        access_token: Token,
        realm_id: str,
        start_date: date,
        end_date: date,
    ) -> ProfitLoss:
        """
        Fetch the ProfitAndLoss report for an inclusive date range.

        Args:
            access_token: Bearer token
            realm_id: QuickBooks company ID
            start_date: First day of the period
            end_date: Last day of the period

        Returns:
            Revenue, expenses and profit for the period
        """
        report = await self._get(
            access_token,
            realm_id,
            "reports/ProfitAndLoss",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
        result = report_parser.parse_profit_and_loss(report)
        logger.info(
            "profit_and_loss_calculated",
            realm_id=realm_id,
            revenue=str(result.revenue),
            expenses=str(result.expenses),
            profit=str(result.profit),
        )
        return result

    async def get_tax_liability(self, access_token: Token, realm_id: str) -> Decimal:
        payload = await self.query(access_token, realm_id, TAX_ACCOUNTS_QUERY)
        total = report_parser.parse_tax_liability(payload)
        logger.info("tax_liability_calculated", realm_id=realm_id, total=str(total))
        return total

    async def get_outstanding_invoices(self, access_token: Token, realm_id: str) -> Decimal:
        payload = await self.query(access_token, realm_id, OPEN_INVOICES_QUERY)
        total = report_parser.parse_outstanding_invoices(payload)
        logger.info("outstanding_invoices_calculated", realm_id=realm_id, total=str(total))
        return total

    async def get_company_info(self, access_token: Token, realm_id: str) -> Optional[CompanyInfo]:
        payload = await self._get(access_token, realm_id, f"companyinfo/{realm_id}")
        return report_parser.parse_company_info(payload)
