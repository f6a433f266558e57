from __future__ import annotations

import dataclasses
import datetime as dt
from decimal import Decimal

import pytest

from src.core.config import EngineConfig
from src.core.corporate_actions import merger_cash_fraction
from src.core.errors import ValidationError
from src.core.rebuild import rebuild
from src.core.records import (
    AdjustmentSource,
    CashDividend,
    DividendClass,
    Merger,
    ReturnOfCapital,
    SpinOff,
    Split,
    StockDividend,
    Transaction,
    action_from_params,
)
from src.core.symbols import SymbolRegistry

EPS = Decimal("0.01")


def _buy(txn_id: int, qty: str, price: str, d: dt.date, symbol: str = "AAA") -> Transaction:
    return dataclasses.replace(Transaction.buy("acct", symbol, qty, price, d), id=txn_id)


def _sell(txn_id: int, qty: str, price: str, d: dt.date, symbol: str = "AAA") -> Transaction:
    return dataclasses.replace(Transaction.sell("acct", symbol, qty, price, d), id=txn_id)


def _run(txns, actions, **cfg):
    return rebuild(
        txns,
        actions,
        account_id="acct",
        config=EngineConfig(**cfg),
        identity=SymbolRegistry(allow_unknown=True),
    )


def _basis(lots) -> Decimal:
    return sum((l.total_basis for l in lots), Decimal(0))


def test_split_scales_quantity_and_basis():
    res = _run(
        [_buy(1, "100", "50", dt.date(2024, 1, 1))],
        [Split(id=1, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), ratio_from=Decimal(1), ratio_to=Decimal(2))],
    )
    (lot,) = res.lots
    assert lot.remaining_quantity == Decimal("200")
    assert lot.unit_cost_basis == Decimal("25")
    assert lot.acquisition_date == dt.date(2024, 1, 1)
    (adj,) = res.adjustments
    assert adj.source == AdjustmentSource.SPLIT
    assert adj.corporate_action_id == 1


def test_split_then_reverse_split_round_trips():
    res = _run(
        [_buy(1, "30", "7", dt.date(2024, 1, 1)), _buy(2, "7", "3.33", dt.date(2024, 2, 1))],
        [
            Split(id=1, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), ratio_from=Decimal(1), ratio_to=Decimal(2)),
            Split(id=2, symbol_id="AAA", ex_date=dt.date(2024, 7, 1), ratio_from=Decimal(2), ratio_to=Decimal(1)),
        ],
    )
    by_id = {l.id: l for l in res.lots}
    assert abs(by_id["T1"].remaining_quantity - Decimal("30")) <= Decimal("0.00000001")
    assert abs(by_id["T1"].unit_cost_basis - Decimal("7")) <= EPS
    assert abs(by_id["T2"].remaining_quantity - Decimal("7")) <= Decimal("0.00000001")
    assert abs(_basis(res.lots) - Decimal("233.31")) <= EPS


def test_three_for_one_split_of_odd_lot_conserves_basis():
    res = _run(
        [_buy(1, "7", "10", dt.date(2024, 1, 1))],
        [Split(id=1, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), ratio_from=Decimal(3), ratio_to=Decimal(1))],
    )
    (lot,) = res.lots
    assert abs(lot.total_basis - Decimal("70")) <= EPS
    assert abs(lot.remaining_quantity * 3 - Decimal("7")) <= Decimal("0.00000001")


def test_buy_on_ex_date_is_affected_but_later_buy_is_not():
    ex = dt.date(2024, 6, 1)
    res = _run(
        [_buy(1, "10", "10", ex), _buy(2, "10", "10", ex + dt.timedelta(days=1))],
        [Split(id=1, symbol_id="AAA", ex_date=ex, ratio_from=Decimal(1), ratio_to=Decimal(2))],
    )
    by_id = {l.id: l for l in res.lots}
    assert by_id["T1"].remaining_quantity == Decimal("20")
    assert by_id["T2"].remaining_quantity == Decimal("10")


def test_action_with_no_lots_is_a_warning():
    res = _run([], [Split(id=4, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), ratio_from=Decimal(1), ratio_to=Decimal(2))])
    assert res.lots == ()
    assert len(res.warnings) == 1
    assert "affected no open lots" in res.warnings[0]


def test_stock_dividend_creates_child_lot_and_conserves_basis():
    res = _run(
        [_buy(1, "100", "10", dt.date(2024, 1, 1))],
        [StockDividend(id=2, symbol_id="AAA", ex_date=dt.date(2024, 3, 1), shares_per_share=Decimal("0.05"))],
    )
    by_id = {l.id: l for l in res.lots}
    child = by_id["T1.SD2"]
    assert child.remaining_quantity == Decimal("5.00")
    assert child.parent_lot_id == "T1"
    assert child.origin_corporate_action_id == 2
    assert child.acquisition_date == dt.date(2024, 3, 1)
    assert by_id["T1"].unit_cost_basis == child.unit_cost_basis
    assert abs(_basis(res.lots) - Decimal("1000")) <= EPS
    # One adjustment: the parent's basis spread; the child has none.
    assert [a.affected_lot_id for a in res.adjustments] == ["T1"]


def test_return_of_capital_reduces_basis():
    res = _run(
        [_buy(1, "100", "10", dt.date(2024, 1, 1))],
        [ReturnOfCapital(id=1, symbol_id="AAA", ex_date=dt.date(2024, 3, 1), cash_per_share=Decimal("2"))],
    )
    (lot,) = res.lots
    assert lot.unit_cost_basis == Decimal("8")
    assert res.realized_gains == ()


def test_return_of_capital_beyond_basis_floors_at_zero_and_realizes_gain():
    res = _run(
        [_buy(1, "100", "10", dt.date(2024, 1, 1))],
        [ReturnOfCapital(id=3, symbol_id="AAA", ex_date=dt.date(2024, 3, 1), cash_per_share=Decimal("12"))],
    )
    (lot,) = res.lots
    assert lot.unit_cost_basis == Decimal("0")
    (g,) = res.realized_gains
    assert g.id == "A3:T1"
    assert g.sale_transaction_id is None
    assert g.corporate_action_id == 3
    assert (g.proceeds, g.cost_basis, g.gain_or_loss) == (Decimal("1200"), Decimal("1000"), Decimal("200"))


def test_second_return_of_capital_on_zero_basis_lot_counts_as_affecting_it():
    res = _run(
        [_buy(1, "10", "1", dt.date(2025, 1, 2))],
        [
            ReturnOfCapital(id=1, symbol_id="AAA", ex_date=dt.date(2025, 2, 3), cash_per_share=Decimal("2")),
            ReturnOfCapital(id=2, symbol_id="AAA", ex_date=dt.date(2025, 3, 3), cash_per_share=Decimal("2")),
        ],
    )
    first, second = res.realized_gains
    assert first.gain_or_loss == Decimal("10")
    assert (second.cost_basis, second.gain_or_loss) == (Decimal("0"), Decimal("20"))
    # Only the first distribution changes the basis.
    assert len(res.adjustments) == 1
    assert res.warnings == []


def test_stock_for_stock_merger_moves_basis_to_new_symbol():
    res = _run(
        [_buy(1, "100", "10", dt.date(2023, 1, 1))],
        [
            Merger(
                id=1,
                symbol_id="AAA",
                ex_date=dt.date(2024, 3, 1),
                exchange_ratio=Decimal("0.5"),
                new_symbol_id="BBB",
            )
        ],
    )
    by_id = {l.id: l for l in res.lots}
    assert by_id["T1"].is_closed
    new = by_id["T1.M1"]
    assert new.symbol_id == "BBB"
    assert new.remaining_quantity == Decimal("50")
    assert new.unit_cost_basis == Decimal("20")
    assert new.acquisition_date == dt.date(2023, 1, 1)
    assert res.realized_gains == ()
    assert "BBB" in res.symbol_ids
    assert res.state_for("BBB").lots == (new,)


def test_cash_out_merger_realizes_gain_and_closes_lot():
    res = _run(
        [_buy(1, "100", "10", dt.date(2023, 1, 1))],
        [Merger(id=1, symbol_id="AAA", ex_date=dt.date(2024, 3, 1), cash_per_share=Decimal("15"))],
    )
    (lot,) = res.lots
    assert lot.is_closed
    (g,) = res.realized_gains
    assert (g.proceeds, g.cost_basis, g.gain_or_loss) == (Decimal("1500"), Decimal("1000"), Decimal("500"))
    assert g.holding_period.value == "LT"


def test_mixed_merger_splits_basis_between_cash_and_stock():
    action = Merger(
        id=1,
        symbol_id="AAA",
        ex_date=dt.date(2024, 3, 1),
        exchange_ratio=Decimal("0.5"),
        cash_per_share=Decimal("5"),
        new_symbol_id="BBB",
        new_symbol_price=Decimal("20"),
    )
    assert abs(merger_cash_fraction(action) - Decimal(1) / Decimal(3)) <= Decimal("1e-20")
    res = _run([_buy(1, "100", "10", dt.date(2024, 1, 1))], [action])
    (g,) = res.realized_gains
    assert g.proceeds == Decimal("500")
    assert abs(g.cost_basis - Decimal("333.33")) <= EPS
    new = {l.id: l for l in res.lots}["T1.M1"]
    assert new.remaining_quantity == Decimal("50")
    assert abs(new.total_basis + g.cost_basis - Decimal("1000")) <= EPS


def test_mixed_merger_without_price_or_fraction_is_rejected():
    with pytest.raises(ValidationError):
        Merger(
            symbol_id="AAA",
            ex_date=dt.date(2024, 3, 1),
            exchange_ratio=Decimal("0.5"),
            cash_per_share=Decimal("5"),
        ).validate()


def test_spinoff_allocates_basis_to_child():
    res = _run(
        [_buy(1, "100", "10", dt.date(2023, 1, 1))],
        [
            SpinOff(
                id=5,
                symbol_id="AAA",
                ex_date=dt.date(2024, 3, 1),
                new_symbol_id="SPN",
                distribution_ratio=Decimal("0.5"),
                basis_allocation=Decimal("0.2"),
            )
        ],
    )
    by_id = {l.id: l for l in res.lots}
    parent, child = by_id["T1"], by_id["T1.S5"]
    assert parent.remaining_quantity == Decimal("100")
    assert parent.unit_cost_basis == Decimal("8")
    assert child.symbol_id == "SPN"
    assert child.remaining_quantity == Decimal("50")
    assert child.unit_cost_basis == Decimal("4")
    assert child.holding_period_start == dt.date(2023, 1, 1)
    assert [a.source for a in res.adjustments] == [AdjustmentSource.SPINOFF]


def test_cash_dividend_classifies_by_holding_days():
    res = _run(
        [_buy(1, "100", "10", dt.date(2024, 1, 1)), _buy(2, "10", "10", dt.date(2024, 5, 20))],
        [CashDividend(id=1, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), cash_per_share=Decimal("0.5"), qualified=True)],
    )
    by_lot = {d.lot_id: d for d in res.dividends}
    assert by_lot["T1"].classification == DividendClass.QUALIFIED
    assert by_lot["T1"].amount == Decimal("50.0")
    assert by_lot["T2"].classification == DividendClass.ORDINARY
    assert res.adjustments == ()


def test_action_from_params_rejects_unknown_fields_and_kinds():
    with pytest.raises(ValidationError):
        action_from_params("SPLIT", symbol_id="AAA", ex_date=dt.date(2024, 1, 1), ratio_to="2", ratio_from="1", bogus=1)
    with pytest.raises(ValidationError):
        action_from_params("REVERSE_MERGER", symbol_id="AAA", ex_date=dt.date(2024, 1, 1))
    split = action_from_params("SPLIT", symbol_id="AAA", ex_date=dt.date(2024, 1, 1), ratio_from="1", ratio_to="2")
    assert isinstance(split, Split)
    assert split.ratio_to == Decimal("2")


def test_non_positive_ratio_is_rejected():
    with pytest.raises(ValidationError):
        Split(symbol_id="AAA", ex_date=dt.date(2024, 1, 1), ratio_from=Decimal(0), ratio_to=Decimal(2)).validate()


def test_sell_after_split_uses_adjusted_basis():
    res = _run(
        [_buy(1, "100", "50", dt.date(2024, 1, 1)), _sell(2, "200", "40", dt.date(2025, 2, 1))],
        [Split(id=1, symbol_id="AAA", ex_date=dt.date(2024, 6, 1), ratio_from=Decimal(1), ratio_to=Decimal(2))],
    )
    (g,) = res.realized_gains
    assert g.gain_or_loss == Decimal("3000")
