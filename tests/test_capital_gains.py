from __future__ import annotations

import dataclasses
import datetime as dt
from decimal import Decimal

import pytest

from src.core.capital_gains import gain_identity_holds, holding_period, realize_sale, unrealized_gains
from src.core.errors import ValidationError
from src.core.lots import LotTracker
from src.core.records import HoldingPeriod, LotMatch, Transaction


def _match(lot_id: str, qty: str, basis: str, acquired: dt.date) -> LotMatch:
    return LotMatch(
        lot_id=lot_id,
        symbol_id="AAA",
        quantity=Decimal(qty),
        unit_cost_basis=Decimal(basis),
        acquisition_date=acquired,
        holding_period_start=acquired,
    )


def test_long_term_needs_strictly_more_than_365_days():
    start = dt.date(2025, 1, 1)
    assert holding_period(start, dt.date(2026, 1, 1)) == HoldingPeriod.SHORT_TERM
    assert holding_period(start, dt.date(2026, 1, 2)) == HoldingPeriod.LONG_TERM


def test_fee_is_prorated_and_fragments_sum_to_net_proceeds():
    sale = dataclasses.replace(Transaction.sell("acct", "AAA", "15", "10", dt.date(2025, 6, 1), fee="3"), id=9)
    gains = realize_sale(
        sale,
        [
            _match("T1", "10", "8", dt.date(2024, 1, 1)),
            _match("T2", "5", "12", dt.date(2025, 3, 1)),
        ],
    )
    assert [g.id for g in gains] == ["G9:T1", "G9:T2"]
    assert gains[0].proceeds == Decimal("98")
    assert gains[1].proceeds == Decimal("49")
    assert sum(g.proceeds for g in gains) == Decimal("147")
    assert gains[0].gain_or_loss == Decimal("18")
    assert gains[1].gain_or_loss == Decimal("-11")
    assert [g.holding_period for g in gains] == [HoldingPeriod.LONG_TERM, HoldingPeriod.SHORT_TERM]
    assert gain_identity_holds(gains)


def test_uneven_proration_leaves_remainder_on_last_fragment():
    sale = dataclasses.replace(Transaction.sell("acct", "AAA", "3", "10", dt.date(2025, 6, 1), fee="1"), id=1)
    gains = realize_sale(
        sale,
        [
            _match("T1", "1", "1", dt.date(2025, 1, 1)),
            _match("T2", "1", "1", dt.date(2025, 1, 2)),
            _match("T3", "1", "1", dt.date(2025, 1, 3)),
        ],
    )
    assert abs(sum(g.proceeds for g in gains) - Decimal("29")) <= Decimal("1e-20")
    assert gains[0].proceeds == gains[1].proceeds


def test_realize_sale_refuses_non_sell():
    buy = dataclasses.replace(Transaction.buy("acct", "AAA", "1", "1", dt.date(2025, 1, 1)), id=1)
    with pytest.raises(ValidationError):
        realize_sale(buy, [])


def test_unrealized_gains_value_open_lots():
    tr = LotTracker("acct")
    tr.open_from_transaction(dataclasses.replace(Transaction.buy("acct", "AAA", "10", "10", dt.date(2024, 1, 1)), id=1))
    tr.open_from_transaction(dataclasses.replace(Transaction.buy("acct", "AAA", "5", "30", dt.date(2025, 5, 1)), id=2))
    rows = unrealized_gains(tr.lots("AAA"), price=Decimal("20"), as_of=dt.date(2025, 6, 1))
    by_lot = {r.lot_id: r for r in rows}
    assert by_lot["T1"].gain_or_loss == Decimal("100")
    assert by_lot["T1"].holding_period == HoldingPeriod.LONG_TERM
    assert by_lot["T2"].gain_or_loss == Decimal("-50")
    assert by_lot["T2"].holding_period == HoldingPeriod.SHORT_TERM
    with pytest.raises(ValidationError):
        unrealized_gains(tr.lots("AAA"), price=Decimal("-1"), as_of=dt.date(2025, 6, 1))
