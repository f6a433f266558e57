from __future__ import annotations

import dataclasses
import datetime as dt
from decimal import Decimal

import pytest

from src.core.errors import EngineError, OversellError
from src.core.lots import LotTracker
from src.core.records import AdjustmentSource, LotStatus, Transaction


def _mk_tracker(*buys: tuple[int, str, str, dt.date]) -> LotTracker:
    tr = LotTracker("acct", quantity_epsilon=Decimal("0.00000001"))
    for txn_id, qty, price, d in buys:
        tr.open_from_transaction(dataclasses.replace(Transaction.buy("acct", "AAA", qty, price, d), id=txn_id))
    return tr


def test_open_from_transaction_includes_fee_in_basis():
    tr = LotTracker("acct")
    t = Transaction.buy("acct", "AAA", "4", "10", dt.date(2025, 1, 1), fee="2")
    lot = tr.open_from_transaction(dataclasses.replace(t, id=3))
    assert lot.id == "T3"
    assert lot.unit_cost_basis == Decimal("10.5")
    assert lot.status == LotStatus.OPEN
    assert lot.holding_period_start == lot.acquisition_date


def test_fifo_consumes_oldest_first_across_lots():
    tr = _mk_tracker(
        (2, "10", "20", dt.date(2025, 2, 1)),
        (1, "10", "10", dt.date(2025, 1, 1)),
    )
    matches = tr.consume_fifo("AAA", Decimal("15"), transaction_id=9)
    assert [(m.lot_id, m.quantity, m.unit_cost_basis) for m in matches] == [
        ("T1", Decimal("10"), Decimal("10")),
        ("T2", Decimal("5"), Decimal("20")),
    ]
    assert tr.get("T1").status == LotStatus.CLOSED
    assert tr.get("T2").status == LotStatus.PARTIALLY_CONSUMED
    assert tr.open_quantity("AAA") == Decimal("5")


def test_same_day_lots_consumed_in_creation_order():
    d = dt.date(2025, 1, 1)
    tr = _mk_tracker((5, "1", "10", d), (6, "1", "20", d))
    matches = tr.consume_fifo("AAA", Decimal("1"))
    assert matches[0].lot_id == "T5"


def test_oversell_leaves_lots_untouched():
    tr = _mk_tracker((1, "10", "10", dt.date(2025, 1, 1)))
    with pytest.raises(OversellError) as ei:
        tr.consume_fifo("AAA", Decimal("11"), transaction_id=4)
    assert ei.value.available == Decimal("10")
    assert ei.value.transaction_id == 4
    assert tr.get("T1").remaining_quantity == Decimal("10")


def test_sub_epsilon_shortfall_is_allowed():
    tr = _mk_tracker((1, "10", "10", dt.date(2025, 1, 1)))
    matches = tr.consume_fifo("AAA", Decimal("10.000000001"))
    assert sum(m.quantity for m in matches) == Decimal("10")
    assert tr.get("T1").is_closed


def test_adjust_records_old_and_new_and_refuses_closed_lot():
    tr = _mk_tracker((1, "10", "10", dt.date(2025, 1, 1)))
    adj = tr.adjust(
        "T1",
        source=AdjustmentSource.SPLIT,
        applied_at=dt.date(2025, 6, 1),
        new_quantity=Decimal("20"),
        new_basis=Decimal("5"),
        corporate_action_id=1,
    )
    assert adj.id == "T1/adj1"
    assert (adj.old_quantity, adj.old_basis, adj.new_quantity, adj.new_basis) == (
        Decimal("10"),
        Decimal("10"),
        Decimal("20"),
        Decimal("5"),
    )
    lot = tr.get("T1")
    assert lot.original_quantity == Decimal("20")
    assert lot.total_basis == Decimal("100")

    tr.consume_fifo("AAA", Decimal("20"))
    with pytest.raises(EngineError):
        tr.adjust("T1", source=AdjustmentSource.SPLIT, applied_at=dt.date(2025, 7, 1), new_basis=Decimal("1"))
    assert len(tr.adjustments()) == 1


def test_open_lots_respects_acquired_on_or_before():
    tr = _mk_tracker(
        (1, "1", "10", dt.date(2025, 1, 1)),
        (2, "1", "10", dt.date(2025, 6, 2)),
    )
    assert [l.id for l in tr.open_lots("AAA", acquired_on_or_before=dt.date(2025, 6, 1))] == ["T1"]
