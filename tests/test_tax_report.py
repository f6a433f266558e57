from __future__ import annotations

import datetime as dt
from decimal import Decimal

from src.core.capital_gains import holding_period
from src.core.config import EngineConfig
from src.core.records import (
    DividendClass,
    DividendIncome,
    HoldingPeriod,
    RealizedGain,
    WashSaleViolation,
)
from src.core.tax_report import build_tax_report, group_by_year_and_term, summarize_dividends


def _mk_gain(gid: str, sale: dt.date, start: dt.date, proceeds: str, basis: str, disallowed: str = "0") -> RealizedGain:
    p, b = Decimal(proceeds), Decimal(basis)
    return RealizedGain(
        id=gid,
        account_id="acct",
        symbol_id="AAA",
        sale_transaction_id=1,
        lot_id="T1",
        sale_date=sale,
        holding_period_start=start,
        quantity_matched=Decimal("1"),
        proceeds=p,
        cost_basis=b,
        gain_or_loss=p - b,
        holding_period=holding_period(start, sale),
        disallowed_loss=Decimal(disallowed),
    )


def _mk_violation(sale: dt.date, disallowed: str, hp: HoldingPeriod = HoldingPeriod.SHORT_TERM) -> WashSaleViolation:
    return WashSaleViolation(
        id=f"W-{sale}-{disallowed}",
        account_id="acct",
        loss_transaction_id=1,
        loss_gain_id="G1:T1",
        replacement_transaction_id=2,
        adjusted_replacement_lot_id="T2",
        replacement_shares=Decimal("1"),
        disallowed_loss=Decimal(disallowed),
        sale_date=sale,
        replacement_date=sale,
        holding_period=hp,
    )


def _mk_dividend(did: str, pay: dt.date, amount: str, cls: DividendClass) -> DividendIncome:
    return DividendIncome(
        id=did,
        account_id="acct",
        symbol_id="AAA",
        corporate_action_id=1,
        lot_id="T1",
        pay_date=pay,
        shares_eligible=Decimal("1"),
        cash_per_share=Decimal(amount),
        amount=Decimal(amount),
        classification=cls,
    )


def test_grouping_by_year_and_term():
    gains = [
        _mk_gain("a", dt.date(2025, 3, 1), dt.date(2025, 1, 1), "100", "150"),
        _mk_gain("b", dt.date(2025, 4, 1), dt.date(2023, 1, 1), "300", "100"),
        _mk_gain("c", dt.date(2024, 4, 1), dt.date(2024, 1, 1), "50", "40"),
    ]
    rows = group_by_year_and_term(gains, [_mk_violation(dt.date(2025, 3, 1), "20")])
    st = rows[(2025, HoldingPeriod.SHORT_TERM)]
    assert st.gain_or_loss == Decimal("-50")
    assert st.disallowed_loss == Decimal("20")
    assert st.net_gain_or_loss == Decimal("-30")
    assert rows[(2025, HoldingPeriod.LONG_TERM)].gain_or_loss == Decimal("200")
    assert rows[(2024, HoldingPeriod.SHORT_TERM)].dispositions == 1


def test_report_rounds_once_and_orders_short_term_first():
    gains = [
        _mk_gain("a", dt.date(2025, 6, 1), dt.date(2023, 1, 1), "100.005", "50"),
        _mk_gain("b", dt.date(2025, 6, 1), dt.date(2025, 5, 1), "10.004", "20.0013"),
        _mk_gain("c", dt.date(2024, 6, 1), dt.date(2024, 5, 1), "999", "1"),
    ]
    divs = [
        _mk_dividend("d1", dt.date(2025, 2, 1), "10.10", DividendClass.QUALIFIED),
        _mk_dividend("d2", dt.date(2025, 3, 1), "5.05", DividendClass.ORDINARY),
        _mk_dividend("d3", dt.date(2024, 3, 1), "99", DividendClass.ORDINARY),
    ]
    report = build_tax_report(
        account_id="acct",
        tax_year=2025,
        gains=gains,
        violations=[_mk_violation(dt.date(2025, 6, 1), "3.3333")],
        dividends=divs,
        config=EngineConfig(),
        warnings=["note"],
    )
    assert [r.holding_period for r in report.rows] == ["ST", "LT"]
    st, lt = report.rows
    assert st.gain_or_loss == Decimal("-10.00")
    assert st.disallowed_loss == Decimal("3.33")
    assert report.short_term_net == Decimal("-6.66")
    assert lt.proceeds == Decimal("100.00")
    assert report.long_term_net == Decimal("50.00")
    assert report.total_disallowed_loss == Decimal("3.33")
    assert report.dividends.dividend_income == Decimal("15.15")
    assert report.dividends.qualified_dividends == Decimal("10.10")
    assert report.dividends.ordinary_dividends == Decimal("5.05")
    # 10.10 * 0.15 + 5.05 * 0.24
    assert report.dividends.estimated_withholding == Decimal("2.73")
    assert report.warnings == ["note"]

    data = report.as_json()
    assert data["rows"][0]["holding_period"] == "ST"
    assert data["short_term_net"] == "-6.66"


def test_empty_year_has_zero_totals():
    report = build_tax_report(account_id="acct", tax_year=2030, gains=[], violations=[])
    assert report.rows == []
    assert report.short_term_net == Decimal("0")
    assert report.dividends.dividend_income == Decimal("0")


def test_dividend_withholding_uses_rate_per_classification():
    divs = [
        _mk_dividend("d1", dt.date(2025, 2, 1), "100", DividendClass.QUALIFIED),
        _mk_dividend("d2", dt.date(2025, 3, 1), "50", DividendClass.ORDINARY),
    ]
    out = summarize_dividends(divs, tax_year=2025, qualified_rate=Decimal("0.10"), ordinary_rate=Decimal("0.30"))
    assert out.estimated_withholding == Decimal("25.00")
    assert summarize_dividends(divs, tax_year=2025).estimated_withholding == Decimal("0")
