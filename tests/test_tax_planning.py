from __future__ import annotations

import datetime as dt
from decimal import Decimal

from src.core.config import EngineConfig
from src.core.engine import CostBasisEngine
from src.core.records import HoldingPeriod, Transaction
from src.core.symbols import SymbolRegistry
from src.core.tax_planning import RISK_DEFINITE, RISK_NONE, RISK_POSSIBLE, ProposedBuy
from src.utils.time import FrozenClock

AS_OF = dt.date(2026, 6, 30)


def _mk_engine(identity=None, **cfg) -> CostBasisEngine:
    return CostBasisEngine(config=EngineConfig(**cfg), identity=identity, clock=FrozenClock(AS_OF))


def _buy(engine, symbol, qty, price, d):
    return engine.record_transaction(Transaction.buy("acct", symbol, qty, price, d)).unwrap()


def test_recent_buy_of_substitute_makes_loss_sale_a_definite_wash():
    reg = SymbolRegistry()
    reg.add_group("total-market", ["VTI", "ITOT"])
    eng = _mk_engine(identity=reg)
    _buy(eng, "ITOT", "10", "100", dt.date(2025, 3, 1))

    risk = eng.wash_sale_risk("acct", "VTI", dt.date(2025, 3, 20)).unwrap()
    assert risk.level == RISK_DEFINITE
    (m,) = risk.matches
    assert (m.kind, m.symbol_id, m.transaction_id, m.reason) == ("EXECUTED_BUY", "ITOT", 1, "same_substitute_group")
    assert risk.safe_sale_date == dt.date(2025, 4, 1)
    assert risk.safe_repurchase_date == dt.date(2025, 4, 20)

    later = eng.wash_sale_risk("acct", "VTI", dt.date(2025, 5, 1)).unwrap()
    assert later.level == RISK_NONE
    assert not later.at_risk
    assert later.safe_sale_date == dt.date(2025, 5, 1)


def test_proposed_buys_are_checked_too():
    reg = SymbolRegistry()
    reg.add_group("total-market", ["VTI", "ITOT"])
    eng = _mk_engine(identity=reg)

    planned = [ProposedBuy(symbol_id="ITOT", date=dt.date(2025, 5, 10))]
    risk = eng.wash_sale_risk("acct", "VTI", dt.date(2025, 5, 1), planned).unwrap()
    assert risk.level == RISK_DEFINITE
    assert [m.kind for m in risk.matches] == ["PROPOSED_BUY"]

    outside = [ProposedBuy(symbol_id="ITOT", date=dt.date(2025, 6, 1))]
    assert eng.wash_sale_risk("acct", "VTI", dt.date(2025, 5, 1), outside).unwrap().level == RISK_NONE

    unknown = [ProposedBuy(symbol_id="ZZZ", date=dt.date(2025, 5, 2))]
    assert eng.wash_sale_risk("acct", "VTI", dt.date(2025, 5, 1), unknown).unwrap().level == RISK_POSSIBLE

    assert eng.wash_sale_risk("acct", "NOPE").error.code == "VALIDATION_ERROR"


def test_harvest_candidates_rank_losses_above_threshold():
    eng = _mk_engine()
    _buy(eng, "AAA", "100", "50", dt.date(2025, 1, 2))
    _buy(eng, "BBB", "10", "20", dt.date(2025, 1, 2))
    _buy(eng, "CCC", "50", "10", dt.date(2026, 6, 10))
    prices = {"AAA": "40", "BBB": "15", "CCC": "5", "DDD": "1"}

    aaa, ccc = eng.harvest_candidates("acct", prices).unwrap()
    assert (aaa.symbol_id, aaa.unrealized_loss) == ("AAA", Decimal("1000"))
    assert (aaa.long_term, aaa.short_term) == (Decimal("-1000"), Decimal("0"))
    assert aaa.harvestable
    assert aaa.lot_ids == ("T1",)

    assert (ccc.symbol_id, ccc.unrealized_loss) == ("CCC", Decimal("250"))
    assert ccc.short_term == Decimal("-250")
    assert ccc.wash_risk == RISK_DEFINITE
    assert not ccc.harvestable
    assert ccc.safe_sale_date == dt.date(2026, 7, 11)
    assert ccc.warnings

    low = eng.harvest_candidates("acct", prices, threshold="10").unwrap()
    assert [c.symbol_id for c in low] == ["AAA", "CCC", "BBB"]


def test_harvest_nets_gains_and_losses_within_a_position():
    eng = _mk_engine()
    _buy(eng, "AAA", "10", "30", dt.date(2024, 1, 2))
    _buy(eng, "AAA", "10", "50", dt.date(2025, 1, 2))
    # +50 on the first lot, -150 on the second.
    (c,) = eng.harvest_candidates("acct", {"AAA": "35"}, threshold="0").unwrap()
    assert c.unrealized_loss == Decimal("100")
    assert c.quantity == Decimal("20")
    assert c.lot_ids == ("T2",)
    assert eng.harvest_candidates("acct", {"AAA": "35"}, threshold="100").unwrap() == []


def test_harvest_rejects_float_prices():
    eng = _mk_engine()
    res = eng.harvest_candidates("acct", {"AAA": 12.5})
    assert res.error.code == "VALIDATION_ERROR"


def test_unrealized_classification_matches_harvest_split():
    eng = _mk_engine()
    _buy(eng, "AAA", "10", "30", dt.date(2026, 1, 2))
    (u,) = eng.unrealized_gains("acct", "AAA", "20").unwrap()
    (c,) = eng.harvest_candidates("acct", {"AAA": "20"}, threshold="0").unwrap()
    assert u.holding_period == HoldingPeriod.SHORT_TERM
    assert c.short_term == u.gain_or_loss
