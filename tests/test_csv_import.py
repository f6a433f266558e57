from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import select

from src.db.models import AuditLog, CorporateActionRecord, Security, TaxLotRecord, TransactionRecord
from src.db.store import LedgerStore
from src.importers.csv_import import import_csv
from src.importers.schemas import CorporateActionRow, TransactionRow
from src.utils.time import FrozenClock


def _mk_engine(session):
    engine, res = LedgerStore(session).load_engine(clock=FrozenClock(dt.date(2026, 6, 30)))
    assert res.ok
    return engine


def test_transaction_row_normalizes_sell_and_numbers():
    row = TransactionRow.model_validate(
        {"account": " IRA ", "symbol": "aapl", "date": "2025-03-01", "type": "sell", "qty": "10", "price": "$1,200.50", "fee": ""}
    )
    txn = row.to_transaction()
    assert (txn.account_id, txn.symbol_id) == ("IRA", "AAPL")
    assert txn.quantity == Decimal("-10")
    assert txn.total_amount == Decimal("12005.00")
    assert txn.fee == Decimal("0")


def test_corporate_action_row_keeps_only_fields_for_its_kind():
    row = CorporateActionRow.model_validate(
        {"symbol": "aaa", "ex_date": "2025-06-01", "kind": "merger", "exchange_ratio": "0.5", "new_symbol": "bbb", "ratio_to": "9"}
    )
    action = row.to_action()
    assert action.new_symbol_id == "BBB"
    assert action.exchange_ratio == Decimal("0.5")
    assert "ratio_to" not in action.params()


def test_import_transactions_reports_bad_rows_and_keeps_good_ones(session):
    engine = _mk_engine(session)
    content = "\n".join(
        [
            "account,symbol,date,type,qty,price,fee",
            "acct,AAA,2025-01-02,BUY,100,50,1",
            "acct,AAA,not-a-date,BUY,5,50,0",
            "acct,AAA,2025-02-01,SELL,500,60,0",
            "acct,AAA,2025-03-01,SELL,40,60,0",
        ]
    )
    out = import_csv(session, engine, kind="transactions", content=content, actor="tester")
    session.commit()

    assert out["rows"] == 2
    assert len(out["errors"]) == 2
    assert out["errors"][0].startswith("line 3:")
    assert out["errors"][1].startswith("line 4: OVERSELL")
    assert out["derived_rows"] > 0

    assert len(session.execute(select(TransactionRecord)).scalars().all()) == 2
    (lot,) = session.execute(select(TaxLotRecord)).scalars().all()
    assert lot.remaining_quantity == Decimal("60")
    assert lot.unit_cost_basis == Decimal("50.01")

    audit = session.execute(select(AuditLog).where(AuditLog.action == "IMPORT_ERRORS")).scalars().one()
    assert audit.entity_id == "transactions"
    assert len(audit.new_json["errors"]) == 2


def test_securities_then_transactions(session):
    engine = _mk_engine(session)
    securities = "symbol,name,substitute_group\nvoo,Vanguard S&P 500,sp500\nIVV,,sp500\n"
    out = import_csv(session, engine, kind="securities", content=securities, actor="tester")
    assert out == {"kind": "securities", "rows": 2, "derived_rows": 0, "errors": []}
    assert session.get(Security, "VOO").substitute_group == "sp500"
    assert engine.identity.equivalents("IVV") == frozenset({"VOO", "IVV"})

    txns = "account,symbol,date,type,qty,price\nacct,VOO,2025-01-02,BUY,10,400\nacct,VOO,2025-02-03,SELL,10,380\nacct,IVV,2025-02-10,BUY,10,385\n"
    out = import_csv(session, engine, kind="transactions", content=txns, actor="tester")
    assert out["errors"] == []
    (w,) = engine.wash_sales("acct").unwrap()
    assert w.disallowed_loss == Decimal("200")


def test_import_corporate_actions(session):
    engine = _mk_engine(session)
    import_csv(
        session,
        engine,
        kind="transactions",
        content="account,symbol,date,type,qty,price\nacct,AAA,2024-01-02,BUY,100,50\n",
        actor="tester",
    )
    content = "\n".join(
        [
            "symbol,ex_date,kind,ratio_from,ratio_to,cash_per_share,qualified",
            "AAA,2024-06-03,SPLIT,1,2,,",
            "AAA,2024-06-03,SPLIT,1,4,,",
            "AAA,2024-09-03,CASH_DIVIDEND,,,0.25,true",
            "AAA,2024-10-01,SPLIT,0,2,,",
        ]
    )
    out = import_csv(session, engine, kind="corporate_actions", content=content, actor="tester")
    session.commit()

    assert out["rows"] == 2
    assert out["errors"][0].startswith("line 3: IDEMPOTENCY_CONFLICT")
    assert out["errors"][1].startswith("line 5: VALIDATION_ERROR")
    assert len(session.execute(select(CorporateActionRecord)).scalars().all()) == 2
    (lot,) = engine.open_lots("acct", "AAA").unwrap()
    assert lot.remaining_quantity == Decimal("200")
    (div,) = engine.dividend_income("acct").unwrap()
    assert div.amount == Decimal("50.00")


def test_unknown_kind_is_an_error(session):
    engine = _mk_engine(session)
    out = import_csv(session, engine, kind="holdings", content="a,b\n1,2\n", actor="tester")
    assert out["rows"] == 0
    assert out["errors"] == ["Unknown import kind: holdings"]
