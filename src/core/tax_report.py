from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from src.core.config import EngineConfig
from src.core.decimal_math import ZERO, add, mul, quantize
from src.core.records import DividendClass, DividendIncome, HoldingPeriod, Lot, RealizedGain, WashSaleViolation
from src.core.types import DividendSummary, LotView, TaxReport, TaxReportRow


def group_by_year_and_term(
    gains: Iterable[RealizedGain],
    violations: Iterable[WashSaleViolation],
) -> dict[tuple[int, HoldingPeriod], TaxReportRow]:
    """Unrounded sums keyed by (tax year, holding period)."""
    rows: dict[tuple[int, HoldingPeriod], TaxReportRow] = {}

    def _row(year: int, hp: HoldingPeriod) -> TaxReportRow:
        key = (year, hp)
        if key not in rows:
            rows[key] = TaxReportRow(tax_year=year, holding_period=hp.value)
        return rows[key]

    for g in gains:
        r = _row(g.tax_year, g.holding_period)
        r.dispositions += 1
        r.proceeds = add(r.proceeds, g.proceeds)
        r.cost_basis = add(r.cost_basis, g.cost_basis)
        r.gain_or_loss = add(r.gain_or_loss, g.gain_or_loss)
    for w in violations:
        r = _row(w.tax_year, w.holding_period)
        r.wash_sales += 1
        r.disallowed_loss = add(r.disallowed_loss, w.disallowed_loss)
    for r in rows.values():
        r.net_gain_or_loss = add(r.gain_or_loss, r.disallowed_loss)
    return rows


def dividend_withholding(d: DividendIncome, *, qualified_rate: Decimal, ordinary_rate: Decimal) -> Decimal:
    rate = qualified_rate if d.classification == DividendClass.QUALIFIED else ordinary_rate
    return mul(d.amount, rate)


def summarize_dividends(
    dividends: Iterable[DividendIncome],
    *,
    tax_year: int,
    qualified_rate: Decimal = ZERO,
    ordinary_rate: Decimal = ZERO,
) -> DividendSummary:
    out = DividendSummary(tax_year=tax_year)
    for d in dividends:
        if d.pay_date.year != tax_year:
            continue
        out.dividend_income = add(out.dividend_income, d.amount)
        if d.classification == DividendClass.QUALIFIED:
            out.qualified_dividends = add(out.qualified_dividends, d.amount)
        else:
            out.ordinary_dividends = add(out.ordinary_dividends, d.amount)
        out.estimated_withholding = add(
            out.estimated_withholding,
            dividend_withholding(d, qualified_rate=qualified_rate, ordinary_rate=ordinary_rate),
        )
    return out


def build_tax_report(
    *,
    account_id: str,
    tax_year: int,
    gains: Iterable[RealizedGain],
    violations: Iterable[WashSaleViolation],
    dividends: Iterable[DividendIncome] = (),
    config: Optional[EngineConfig] = None,
    warnings: Optional[list[str]] = None,
) -> TaxReport:
    cfg = config or EngineConfig()
    scale = cfg.currency_scale

    def _money(v: Decimal) -> Decimal:
        return quantize(v, scale, rounding=cfg.rounding)

    grouped = group_by_year_and_term(
        [g for g in gains if g.tax_year == tax_year],
        [w for w in violations if w.tax_year == tax_year],
    )
    st = grouped.get((tax_year, HoldingPeriod.SHORT_TERM))
    lt = grouped.get((tax_year, HoldingPeriod.LONG_TERM))
    disallowed = add(*(r.disallowed_loss for r in grouped.values()))

    rows: list[TaxReportRow] = []
    for key in sorted(grouped, key=lambda k: (k[0], k[1].value != "ST")):
        r = grouped[key]
        rows.append(
            r.model_copy(
                update={
                    "proceeds": _money(r.proceeds),
                    "cost_basis": _money(r.cost_basis),
                    "gain_or_loss": _money(r.gain_or_loss),
                    "disallowed_loss": _money(r.disallowed_loss),
                    "net_gain_or_loss": _money(r.net_gain_or_loss),
                }
            )
        )

    div = summarize_dividends(
        dividends,
        tax_year=tax_year,
        qualified_rate=cfg.qualified_dividend_withholding_rate,
        ordinary_rate=cfg.ordinary_dividend_withholding_rate,
    )
    return TaxReport(
        account_id=account_id,
        tax_year=tax_year,
        rows=rows,
        short_term_net=_money(st.net_gain_or_loss if st else ZERO),
        long_term_net=_money(lt.net_gain_or_loss if lt else ZERO),
        total_disallowed_loss=_money(disallowed),
        dividends=div.model_copy(
            update={
                "dividend_income": _money(div.dividend_income),
                "qualified_dividends": _money(div.qualified_dividends),
                "ordinary_dividends": _money(div.ordinary_dividends),
                "estimated_withholding": _money(div.estimated_withholding),
            }
        ),
        warnings=list(warnings or []),
    )


def lot_view(lot: Lot, config: Optional[EngineConfig] = None) -> LotView:
    cfg = config or EngineConfig()
    return LotView(
        lot_id=lot.id,
        symbol_id=lot.symbol_id,
        acquisition_date=lot.acquisition_date.isoformat(),
        holding_period_start=lot.holding_period_start.isoformat(),
        quantity=quantize(lot.remaining_quantity, cfg.quantity_scale, rounding=cfg.rounding),
        unit_cost_basis=quantize(lot.unit_cost_basis, cfg.quantity_scale, rounding=cfg.rounding),
        total_basis=quantize(lot.total_basis, cfg.currency_scale, rounding=cfg.rounding),
        status=lot.status.value,
        origin_transaction_id=lot.origin_transaction_id,
        origin_corporate_action_id=lot.origin_corporate_action_id,
        parent_lot_id=lot.parent_lot_id,
    )
