from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Iterable, Optional

from src.core.decimal_math import ZERO, add, div, mul, sub, total
from src.core.errors import ValidationError
from src.core.records import HoldingPeriod, Lot, LotMatch, RealizedGain, Transaction, TransactionKind, UnrealizedGain

log = logging.getLogger(__name__)

LONG_TERM_DAYS = 365


def holding_period(start: dt.date, disposed: dt.date, *, long_term_days: int = LONG_TERM_DAYS) -> HoldingPeriod:
    # LT only when held strictly longer than the threshold.
    return HoldingPeriod.LONG_TERM if (disposed - start).days > long_term_days else HoldingPeriod.SHORT_TERM


def realize_sale(
    txn: Transaction,
    matches: list[LotMatch],
    *,
    long_term_days: int = LONG_TERM_DAYS,
) -> list[RealizedGain]:
    """
    One RealizedGain per FIFO fragment.

    proceeds_i = quantity_i * unit_price - fee * quantity_i / sold; the last
    fragment takes the remainder so the fragments sum to the sale's net proceeds.
    """
    if txn.kind != TransactionKind.SELL:
        raise ValidationError(f"cannot realize gains for {txn.kind.value} transaction {txn.id}")
    sold = abs(txn.quantity)
    if not matches:
        return []
    gross = txn.total_amount if txn.total_amount > 0 else mul(sold, txn.unit_price)
    net = sub(gross, txn.fee)

    out: list[RealizedGain] = []
    allocated = ZERO
    for i, m in enumerate(matches):
        if i == len(matches) - 1:
            proceeds = sub(net, allocated)
        else:
            proceeds = div(mul(net, m.quantity), sold)
            allocated = add(allocated, proceeds)
        basis = mul(m.quantity, m.unit_cost_basis)
        out.append(
            RealizedGain(
                id=f"G{txn.id}:{m.lot_id}",
                account_id=txn.account_id,
                symbol_id=m.symbol_id,
                sale_transaction_id=txn.id,
                lot_id=m.lot_id,
                sale_date=txn.trade_date,
                holding_period_start=m.holding_period_start,
                quantity_matched=m.quantity,
                proceeds=proceeds,
                cost_basis=basis,
                gain_or_loss=sub(proceeds, basis),
                holding_period=holding_period(m.holding_period_start, txn.trade_date, long_term_days=long_term_days),
            )
        )
    return out


def synthetic_gain(
    lot: Lot,
    *,
    corporate_action_id: int,
    on: dt.date,
    quantity: Decimal,
    proceeds: Decimal,
    cost_basis: Decimal,
    long_term_days: int = LONG_TERM_DAYS,
) -> RealizedGain:
    """Gain recognized by a corporate action (merger cash, return of capital beyond basis)."""
    return RealizedGain(
        id=f"A{corporate_action_id}:{lot.id}",
        account_id=lot.account_id,
        symbol_id=lot.symbol_id,
        sale_transaction_id=None,
        corporate_action_id=corporate_action_id,
        lot_id=lot.id,
        sale_date=on,
        holding_period_start=lot.holding_period_start,
        quantity_matched=quantity,
        proceeds=proceeds,
        cost_basis=cost_basis,
        gain_or_loss=sub(proceeds, cost_basis),
        holding_period=holding_period(lot.holding_period_start, on, long_term_days=long_term_days),
    )


def unrealized_gains(
    lots: Iterable[Lot],
    *,
    price: Decimal,
    as_of: dt.date,
    long_term_days: int = LONG_TERM_DAYS,
    symbol_id: Optional[str] = None,
) -> list[UnrealizedGain]:
    if price < 0:
        raise ValidationError(f"price must be >= 0, got {price}", field="price")
    out: list[UnrealizedGain] = []
    for lot in lots:
        if lot.remaining_quantity <= 0 or (symbol_id is not None and lot.symbol_id != symbol_id):
            continue
        basis = lot.total_basis
        value = mul(lot.remaining_quantity, price)
        out.append(
            UnrealizedGain(
                lot_id=lot.id,
                symbol_id=lot.symbol_id,
                quantity=lot.remaining_quantity,
                cost_basis=basis,
                market_value=value,
                gain_or_loss=sub(value, basis),
                holding_period=holding_period(lot.holding_period_start, as_of, long_term_days=long_term_days),
            )
        )
    return out


def gain_identity_holds(gains: Iterable[RealizedGain], *, epsilon: Decimal = ZERO) -> bool:
    rows = list(gains)
    lhs = sub(total(g.proceeds for g in rows), total(g.cost_basis for g in rows))
    return abs(sub(lhs, total(g.gain_or_loss for g in rows))) <= epsilon
