from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from src.core.capital_gains import synthetic_gain
from src.core.config import EngineConfig
from src.core.decimal_math import ONE, ZERO, add, div, mul, sub, total, within
from src.core.errors import RoundingToleranceExceeded, ValidationError
from src.core.lots import LotTracker
from src.core.records import (
    ACTION_TYPES,
    AdjustmentSource,
    CashDividend,
    CorporateAction,
    DividendClass,
    DividendIncome,
    Lot,
    Merger,
    RealizedGain,
    ReturnOfCapital,
    SpinOff,
    Split,
    StockDividend,
)

log = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """What a handler may touch while applying one action inside a rebuild."""

    tracker: LotTracker
    config: EngineConfig
    gains: list[RealizedGain] = field(default_factory=list)
    dividends: list[DividendIncome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def affected_lots(self, action: CorporateAction) -> list[Lot]:
        return self.tracker.open_lots(action.symbol_id, acquired_on_or_before=action.ex_date)


def check_conserved(what: str, expected: Decimal, actual: Decimal, epsilon: Decimal) -> None:
    if not within(expected, actual, epsilon):
        log.error("Conservation check failed: %s expected=%s actual=%s epsilon=%s", what, expected, actual, epsilon)
        raise RoundingToleranceExceeded(what, expected=expected, actual=actual, epsilon=epsilon)


@functools.singledispatch
def apply_action(action: CorporateAction, ctx: ActionContext) -> int:
    """Apply `action` to the open lots of its symbol; returns the number of lots affected."""
    raise NotImplementedError(f"no handler for corporate action type {type(action).__name__}")


@apply_action.register
def _apply_split(action: Split, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    eps = ctx.config.basis_epsilon
    before = total(l.total_basis for l in lots)
    after = ZERO
    for lot in lots:
        new_qty = div(mul(lot.remaining_quantity, action.ratio_to), action.ratio_from)
        new_basis = div(mul(lot.unit_cost_basis, action.ratio_from), action.ratio_to)
        check_conserved(f"split {action.id} lot {lot.id} basis", lot.total_basis, mul(new_qty, new_basis), eps)
        ctx.tracker.adjust(
            lot.id,
            source=AdjustmentSource.SPLIT,
            applied_at=action.ex_date,
            new_quantity=new_qty,
            new_basis=new_basis,
            corporate_action_id=action.id,
            note=f"split {action.ratio_from}:{action.ratio_to}",
        )
        after = add(after, mul(new_qty, new_basis))
    check_conserved(f"split {action.id} total basis", before, after, eps)
    return len(lots)


@apply_action.register
def _apply_cash_dividend(action: CashDividend, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    min_days = ctx.config.qualified_dividend_min_days
    for lot in lots:
        held = (action.ex_date - lot.holding_period_start).days
        cls = DividendClass.QUALIFIED if action.qualified and held > min_days else DividendClass.ORDINARY
        ctx.dividends.append(
            DividendIncome(
                id=f"D{action.id}:{lot.id}",
                account_id=lot.account_id,
                symbol_id=lot.symbol_id,
                corporate_action_id=int(action.id),
                lot_id=lot.id,
                pay_date=action.ex_date,
                shares_eligible=lot.remaining_quantity,
                cash_per_share=action.cash_per_share,
                amount=mul(lot.remaining_quantity, action.cash_per_share),
                classification=cls,
            )
        )
    return len(lots)


@apply_action.register
def _apply_return_of_capital(action: ReturnOfCapital, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    touched = 0
    for lot in lots:
        cps = action.cash_per_share
        if lot.unit_cost_basis >= cps:
            new_basis = sub(lot.unit_cost_basis, cps)
        else:
            # Basis floors at zero; the distribution beyond it is a gain.
            new_basis = ZERO
            q = lot.remaining_quantity
            ctx.gains.append(
                synthetic_gain(
                    lot,
                    corporate_action_id=int(action.id),
                    on=action.ex_date,
                    quantity=q,
                    proceeds=mul(q, cps),
                    cost_basis=lot.total_basis,
                    long_term_days=ctx.config.long_term_days,
                )
            )
        touched += 1
        # A lot already at zero basis only yields the gain.
        if new_basis == lot.unit_cost_basis:
            continue
        ctx.tracker.adjust(
            lot.id,
            source=AdjustmentSource.RETURN_OF_CAPITAL,
            applied_at=action.ex_date,
            new_basis=new_basis,
            corporate_action_id=action.id,
            note=f"return of capital {cps}/sh",
        )
    return touched


@apply_action.register
def _apply_stock_dividend(action: StockDividend, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    eps = ctx.config.basis_epsilon
    for lot in lots:
        q = lot.remaining_quantity
        new_shares = mul(q, action.shares_per_share)
        new_basis = div(lot.total_basis, add(q, new_shares))
        check_conserved(
            f"stock dividend {action.id} lot {lot.id} basis",
            lot.total_basis,
            mul(add(q, new_shares), new_basis),
            eps,
        )
        ctx.tracker.adjust(
            lot.id,
            source=AdjustmentSource.STOCK_DIVIDEND,
            applied_at=action.ex_date,
            new_basis=new_basis,
            corporate_action_id=action.id,
            note=f"basis spread over {new_shares} distributed shares",
        )
        ctx.tracker.open_lot(
            lot_id=f"{lot.id}.SD{action.id}",
            symbol_id=lot.symbol_id,
            quantity=new_shares,
            unit_cost_basis=new_basis,
            acquisition_date=action.ex_date,
            origin_corporate_action_id=action.id,
            parent_lot_id=lot.id,
        )
    return len(lots)


def merger_cash_fraction(action: Merger) -> Decimal:
    """Fraction of each lot exchanged for cash rather than stock."""
    if action.exchange_ratio is None:
        return ONE
    if not action.cash_per_share:
        return ZERO
    if action.cash_fraction is not None:
        return action.cash_fraction
    if action.new_symbol_price is not None:
        c = action.cash_per_share
        return div(c, add(c, mul(action.exchange_ratio, action.new_symbol_price)))
    raise ValidationError("MERGER: mixed consideration needs new_symbol_price or cash_fraction")


@apply_action.register
def _apply_merger(action: Merger, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    eps = ctx.config.basis_epsilon
    f = merger_cash_fraction(action)
    cps = action.cash_per_share or ZERO
    target = action.target_symbol_id
    for lot in lots:
        q = lot.remaining_quantity
        basis_total = lot.total_basis
        ctx.tracker.adjust(
            lot.id,
            source=AdjustmentSource.MERGER,
            applied_at=action.ex_date,
            new_quantity=ZERO,
            corporate_action_id=action.id,
            note=f"exchanged in merger into {target}",
        )
        cash_basis = ZERO
        if f > 0:
            cash_qty = mul(q, f)
            cash_basis = mul(basis_total, f)
            ctx.gains.append(
                synthetic_gain(
                    lot,
                    corporate_action_id=int(action.id),
                    on=action.ex_date,
                    quantity=cash_qty,
                    proceeds=mul(q, cps),
                    cost_basis=cash_basis,
                    long_term_days=ctx.config.long_term_days,
                )
            )
        stock_basis = ZERO
        if action.exchange_ratio is not None:
            new_qty = mul(q, action.exchange_ratio)
            new_basis = div(sub(basis_total, cash_basis), new_qty)
            ctx.tracker.open_lot(
                lot_id=f"{lot.id}.M{action.id}",
                symbol_id=target,
                quantity=new_qty,
                unit_cost_basis=new_basis,
                acquisition_date=lot.acquisition_date,
                holding_period_start=lot.holding_period_start,
                origin_transaction_id=lot.origin_transaction_id,
                origin_corporate_action_id=action.id,
                parent_lot_id=lot.id,
            )
            stock_basis = mul(new_qty, new_basis)
        check_conserved(f"merger {action.id} lot {lot.id} basis", basis_total, add(cash_basis, stock_basis), eps)
    return len(lots)


@apply_action.register
def _apply_spinoff(action: SpinOff, ctx: ActionContext) -> int:
    lots = ctx.affected_lots(action)
    eps = ctx.config.basis_epsilon
    for lot in lots:
        q = lot.remaining_quantity
        basis_total = lot.total_basis
        allocated = mul(basis_total, action.basis_allocation)
        if allocated > 0:
            ctx.tracker.adjust(
                lot.id,
                source=AdjustmentSource.SPINOFF,
                applied_at=action.ex_date,
                new_basis=div(sub(basis_total, allocated), q),
                corporate_action_id=action.id,
                note=f"{action.basis_allocation} of basis allocated to {action.new_symbol_id}",
            )
        child_qty = mul(q, action.distribution_ratio)
        child = ctx.tracker.open_lot(
            lot_id=f"{lot.id}.S{action.id}",
            symbol_id=action.new_symbol_id,
            quantity=child_qty,
            unit_cost_basis=div(allocated, child_qty),
            acquisition_date=lot.acquisition_date,
            holding_period_start=lot.holding_period_start,
            origin_transaction_id=lot.origin_transaction_id,
            origin_corporate_action_id=action.id,
            parent_lot_id=lot.id,
        )
        parent = ctx.tracker.get(lot.id)
        check_conserved(
            f"spinoff {action.id} lot {lot.id} basis",
            basis_total,
            add(parent.total_basis, child.total_basis),
            eps,
        )
    return len(lots)


def _unhandled_action_types() -> list[str]:
    fallback = apply_action.dispatch(CorporateAction)
    return [cls.__name__ for cls in ACTION_TYPES.values() if apply_action.dispatch(cls) is fallback]


_missing = _unhandled_action_types()
if _missing:
    raise RuntimeError(f"corporate action types without a handler: {_missing}")


def process_action(action: CorporateAction, ctx: ActionContext) -> int:
    """Validate, apply and log one action; an action touching no lots is a warning, not an error."""
    action.validate()
    if action.id is None:
        raise ValidationError("corporate action must be accepted (have an id) before it is applied")
    touched = apply_action(action, ctx)
    if touched == 0:
        ctx.warnings.append(
            f"{action.kind.value} {action.id} on {action.symbol_id} ({action.ex_date}) affected no open lots in account {ctx.tracker.account_id}."
        )
    log.info(
        "Applied %s id=%s symbol=%s ex_date=%s account=%s lots=%s",
        action.kind.value,
        action.id,
        action.symbol_id,
        action.ex_date,
        ctx.tracker.account_id,
        touched,
    )
    return touched
