"""
Property-based tests using Hypothesis for SteadyBooks.

These tests check invariants of the pure pieces (backoff, breaker, date
ranges, report parsing, margin) across generated inputs.
"""

import asyncio
import random
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal

import hypothesis.strategies as st
from hypothesis import given, settings

from steadybooks.connectors.report_parser import parse_profit_and_loss
from steadybooks.models.connection import DashboardConfig, resolve_date_range
from steadybooks.models.enums import DateRangeType, SubscriptionPlan
from steadybooks.models.snapshot import FinancialSnapshot
from steadybooks.resilience.policy import CircuitState, RetryConfig, TransientError, compute_delay
from tests.conftest import NOW, FakeClock, RecordingSleep, make_breaker, make_policy, pnl_report, pnl_section

amounts = st.decimals(min_value=Decimal("-1000000"), max_value=Decimal("1000000"), places=2, allow_nan=False)


# =============================================================================
# Resilience
# =============================================================================


@given(
    attempt=st.integers(min_value=0, max_value=30),
    base_delay=st.floats(min_value=0.0, max_value=10.0, allow_nan=False),
    max_delay=st.floats(min_value=0.0, max_value=60.0, allow_nan=False),
    jitter=st.booleans(),
    seed=st.integers(),
)
def test_prop_compute_delay_bounded(attempt, base_delay, max_delay, jitter, seed):
    """Backoff never exceeds 1.5x the cap and is never negative."""
    config = RetryConfig(base_delay=base_delay, max_delay=max_delay, jitter=jitter)
    delay = compute_delay(attempt, config, random.Random(seed))
    assert 0.0 <= delay <= max_delay * 1.5 + 1e-9


@given(outcomes=st.lists(st.booleans(), max_size=50), minimum_throughput=st.integers(min_value=1, max_value=20))
def test_prop_breaker_needs_minimum_throughput(outcomes, minimum_throughput):
    """The breaker can only open once the window holds minimum_throughput outcomes."""
    breaker = make_breaker(FakeClock(), minimum_throughput=minimum_throughput)
    for index, failed in enumerate(outcomes):
        if breaker.state != CircuitState.CLOSED:
            assert index >= minimum_throughput
            break
        if failed:
            breaker.record_failure()
        else:
            breaker.record_success()


@given(
    max_attempts=st.integers(min_value=1, max_value=6),
    failures=st.integers(min_value=0, max_value=10),
)
@settings(max_examples=50)
def test_prop_retry_attempts_never_exceed_max(max_attempts, failures):
    """An operation is called at most max_attempts times, with one sleep between attempts."""
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        if calls <= failures:
            raise TransientError("flaky")
        return calls

    sleep = RecordingSleep()
    policy = make_policy(max_attempts=max_attempts, sleep=sleep)

    try:
        asyncio.run(policy.execute(op))
        succeeded = True
    except TransientError:
        succeeded = False

    assert calls <= max_attempts
    assert succeeded == (failures < max_attempts)
    assert len(sleep.delays) == calls - 1


# =============================================================================
# Dates and figures
# =============================================================================


@given(
    today=st.dates(min_value=date(2000, 1, 1), max_value=date(2100, 12, 31)),
    range_type=st.sampled_from([DateRangeType.THIS_MONTH, DateRangeType.LAST_MONTH, DateRangeType.YEAR_TO_DATE]),
)
def test_prop_date_range_is_ordered_and_not_in_future(today, range_type):
    start, end = resolve_date_range(DashboardConfig(dashboard_id="d", date_range=range_type), today)
    assert start <= end <= today
    assert start.day == 1


@given(income=st.lists(amounts, max_size=4), expenses=st.lists(amounts, max_size=4))
def test_prop_pnl_expenses_non_negative_and_profit_consistent(income, expenses):
    sections = [pnl_section("Income", str(v)) for v in income] + [
        pnl_section("Expenses", str(v)) for v in expenses
    ]
    result = parse_profit_and_loss(pnl_report(*sections))
    assert result.expenses >= 0
    assert result.revenue == sum(income, Decimal("0"))
    assert result.profit == result.revenue - result.expenses


@given(revenue=amounts, profit=amounts)
def test_prop_margin_definition(revenue, profit):
    snapshot = FinancialSnapshot(revenue=revenue, profit=profit, synced_at=NOW)
    if revenue <= 0:
        assert snapshot.margin == Decimal("0.0")
    else:
        expected = (profit / revenue * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN)
        assert snapshot.margin == expected
        assert snapshot.margin.as_tuple().exponent == -1


@given(value=st.one_of(st.none(), st.text(max_size=20), st.integers()))
def test_prop_plan_parse_is_total(value):
    assert isinstance(SubscriptionPlan.parse(value), SubscriptionPlan)


@given(plan=st.sampled_from(list(SubscriptionPlan)))
def test_prop_plan_parse_accepts_own_values(plan):
    assert SubscriptionPlan.parse(plan.value) == plan
    assert SubscriptionPlan.parse(plan.name) == plan
