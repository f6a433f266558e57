from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from src.core.config import EngineConfig
from src.core.engine import CostBasisEngine, EngineResult
from src.core.rebuild import RebuildResult
from src.core.records import (
    CorporateAction,
    InventoryState,
    Transaction,
    TransactionKind,
    action_from_params,
)
from src.core.symbols import SymbolRegistry
from src.db.audit import log_change
from src.db.models import (
    CorporateActionRecord,
    DividendIncomeRecord,
    LotAdjustmentRecord,
    RealizedGainRecord,
    Security,
    TaxLotRecord,
    TransactionRecord,
    WashSaleViolationRecord,
)
from src.utils.jsonable import jsonable
from src.utils.time import Clock

log = logging.getLogger(__name__)


def transaction_from_row(row: TransactionRecord) -> Transaction:
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        symbol_id=row.symbol_id,
        kind=TransactionKind(row.kind),
        quantity=row.quantity,
        unit_price=row.unit_price,
        total_amount=row.total_amount,
        fee=row.fee,
        trade_date=row.trade_date,
        corporate_action_id=row.corporate_action_id,
    )


def action_from_row(row: CorporateActionRecord) -> CorporateAction:
    return action_from_params(
        row.kind,
        id=row.id,
        symbol_id=row.symbol_id,
        ex_date=row.ex_date,
        description=row.description or "",
        **(row.params_json or {}),
    )


class LedgerStore:
    """
    SQLAlchemy persistence for the engine.

    Ledger rows (transactions, corporate actions) are written once; derived rows
    (lots, adjustments, gains, wash sales, dividends) are replaced per account
    after each engine operation. Nothing here commits: the caller's session
    commit makes each operation one database transaction.
    """

    def __init__(self, session: Session, *, actor: str = "system") -> None:
        self.session = session
        self.actor = actor

    # --- identity ---

    def upsert_security(self, symbol: str, *, name: Optional[str] = None, substitute_group: Optional[str] = None) -> Security:
        s = symbol.strip().upper()
        sec = self.session.get(Security, s)
        if sec is None:
            sec = Security(symbol=s, name=name or s, substitute_group=substitute_group)
            self.session.add(sec)
        else:
            if name:
                sec.name = name
            if substitute_group is not None:
                sec.substitute_group = substitute_group or None
        self.session.flush()
        return sec

    def load_identity(self) -> SymbolRegistry:
        rows = self.session.execute(select(Security)).scalars().all()
        # An empty security master accepts any symbol.
        reg = SymbolRegistry(allow_unknown=not rows)
        for r in rows:
            reg.add(r.symbol, substitute_group=r.substitute_group)
        return reg

    # --- loading ---

    def load_engine(
        self,
        config: Optional[EngineConfig] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> tuple[CostBasisEngine, EngineResult[list[RebuildResult]]]:
        engine = CostBasisEngine(config=config, identity=self.load_identity(), clock=clock)
        txns = [
            transaction_from_row(r)
            for r in self.session.execute(select(TransactionRecord).order_by(TransactionRecord.id)).scalars()
        ]
        actions = [
            action_from_row(r)
            for r in self.session.execute(select(CorporateActionRecord).order_by(CorporateActionRecord.id)).scalars()
        ]
        res = engine.load(txns, actions)
        log.info("Loaded %s transactions and %s corporate actions", len(txns), len(actions))
        return engine, res

    # --- ledger writes ---

    def _add_transaction(self, txn: Transaction) -> TransactionRecord:
        row = TransactionRecord(
            id=txn.id,
            account_id=txn.account_id,
            symbol_id=txn.symbol_id,
            kind=txn.kind.value,
            quantity=txn.quantity,
            unit_price=txn.unit_price,
            total_amount=txn.total_amount,
            fee=txn.fee,
            trade_date=txn.trade_date,
            corporate_action_id=txn.corporate_action_id,
        )
        self.session.add(row)
        return row

    def _add_action(self, action: CorporateAction) -> CorporateActionRecord:
        row = CorporateActionRecord(
            id=action.id,
            symbol_id=action.symbol_id,
            kind=action.kind.value,
            ex_date=action.ex_date,
            description=action.description or "",
            params_json=jsonable(action.params()),
        )
        self.session.add(row)
        return row

    def record_transaction(self, engine: CostBasisEngine, txn: Transaction, *, refresh_derived: bool = True) -> EngineResult[Transaction]:
        res = engine.record_transaction(txn)
        if not res.ok:
            return res
        t = res.value
        self._add_transaction(t)
        self.session.flush()
        if refresh_derived:
            self.replace_derived(engine, [t.account_id])
        log_change(
            self.session,
            actor=self.actor,
            action="CREATE",
            entity="Transaction",
            entity_id=str(t.id),
            old=None,
            new=jsonable(t),
            note=f"{t.kind.value} {t.symbol_id}",
        )
        return res

    def apply_corporate_action(
        self, engine: CostBasisEngine, action: CorporateAction, *, refresh_derived: bool = True
    ) -> EngineResult[CorporateAction]:
        res = engine.apply_corporate_action(action)
        if not res.ok:
            return res
        a = res.value
        self._add_action(a)
        self.session.flush()
        if refresh_derived:
            self.replace_derived(engine, engine.accounts())
        log_change(
            self.session,
            actor=self.actor,
            action="APPLY_CORP_ACTION",
            entity="CorporateAction",
            entity_id=str(a.id),
            old=None,
            new=jsonable(a),
            note=a.description or f"{a.kind.value} {a.symbol_id} {a.ex_date}",
        )
        return res

    def delete_transaction(self, engine: CostBasisEngine, transaction_id: int) -> EngineResult[Transaction]:
        res = engine.delete_transaction(transaction_id)
        if not res.ok:
            return res
        t = res.value
        self.replace_derived(engine, [t.account_id])
        self.session.execute(delete(TransactionRecord).where(TransactionRecord.id == transaction_id))
        log_change(
            self.session,
            actor=self.actor,
            action="DELETE",
            entity="Transaction",
            entity_id=str(transaction_id),
            old=jsonable(t),
            new=None,
        )
        return res

    def rebuild(self, engine: CostBasisEngine, account_id: str, symbol_id: str) -> EngineResult[RebuildResult]:
        res = engine.rebuild_inventory(account_id, symbol_id)
        if not res.ok:
            return res
        self.replace_derived(engine, [account_id])
        log_change(
            self.session,
            actor=self.actor,
            action="REBUILD_LOTS",
            entity="TaxLotRebuild",
            entity_id=f"{account_id}:{symbol_id}",
            old=None,
            new=res.value.as_json(),
            note=f"Rebuild lots for {account_id} {symbol_id}",
        )
        return res

    # --- derived rows ---

    def replace_derived(self, engine: CostBasisEngine, account_ids: Iterable[str]) -> int:
        """Swap the stored derived rows of each account for the engine's current state."""
        written = 0
        for account_id in sorted(set(account_ids)):
            for model in (
                LotAdjustmentRecord,
                WashSaleViolationRecord,
                RealizedGainRecord,
                DividendIncomeRecord,
                TaxLotRecord,
            ):
                self.session.execute(delete(model).where(model.account_id == account_id))
            self.session.flush()
            for st in engine.states(account_id):
                written += self._write_state(st)
        self.session.flush()
        return written

    def _write_state(self, st: InventoryState) -> int:
        rows: list = []
        for l in st.lots:
            rows.append(
                TaxLotRecord(
                    id=l.id,
                    account_id=l.account_id,
                    symbol_id=l.symbol_id,
                    origin_transaction_id=l.origin_transaction_id,
                    origin_corporate_action_id=l.origin_corporate_action_id,
                    parent_lot_id=l.parent_lot_id,
                    acquisition_date=l.acquisition_date,
                    holding_period_start=l.holding_period_start,
                    original_quantity=l.original_quantity,
                    remaining_quantity=l.remaining_quantity,
                    unit_cost_basis=l.unit_cost_basis,
                    status=l.status.value,
                    sequence=l.sequence,
                )
            )
        self.session.add_all(rows)
        self.session.flush()
        derived: list = []
        for a in st.adjustments:
            derived.append(
                LotAdjustmentRecord(
                    id=a.id,
                    account_id=st.account_id,
                    symbol_id=st.symbol_id,
                    affected_lot_id=a.affected_lot_id,
                    source=a.source.value,
                    corporate_action_id=a.corporate_action_id,
                    wash_sale_transaction_id=a.wash_sale_transaction_id,
                    old_quantity=a.old_quantity,
                    old_basis=a.old_basis,
                    new_quantity=a.new_quantity,
                    new_basis=a.new_basis,
                    applied_at=a.applied_at,
                    note=a.note,
                )
            )
        for g in st.realized_gains:
            derived.append(
                RealizedGainRecord(
                    id=g.id,
                    account_id=g.account_id,
                    symbol_id=g.symbol_id,
                    sale_transaction_id=g.sale_transaction_id,
                    corporate_action_id=g.corporate_action_id,
                    lot_id=g.lot_id,
                    sale_date=g.sale_date,
                    holding_period_start=g.holding_period_start,
                    tax_year=g.tax_year,
                    quantity_matched=g.quantity_matched,
                    proceeds=g.proceeds,
                    cost_basis=g.cost_basis,
                    gain_or_loss=g.gain_or_loss,
                    disallowed_loss=g.disallowed_loss,
                    holding_period=g.holding_period.value,
                )
            )
        for w in st.wash_sales:
            derived.append(
                WashSaleViolationRecord(
                    id=w.id,
                    account_id=w.account_id,
                    symbol_id=st.symbol_id,
                    loss_transaction_id=w.loss_transaction_id,
                    loss_gain_id=w.loss_gain_id,
                    replacement_transaction_id=w.replacement_transaction_id,
                    adjusted_replacement_lot_id=w.adjusted_replacement_lot_id,
                    replacement_shares=w.replacement_shares,
                    disallowed_loss=w.disallowed_loss,
                    sale_date=w.sale_date,
                    replacement_date=w.replacement_date,
                    tax_year=w.tax_year,
                    holding_period=w.holding_period.value,
                )
            )
        for d in st.dividends:
            derived.append(
                DividendIncomeRecord(
                    id=d.id,
                    account_id=d.account_id,
                    symbol_id=d.symbol_id,
                    corporate_action_id=d.corporate_action_id,
                    lot_id=d.lot_id,
                    pay_date=d.pay_date,
                    shares_eligible=d.shares_eligible,
                    cash_per_share=d.cash_per_share,
                    amount=d.amount,
                    classification=d.classification.value,
                )
            )
        self.session.add_all(derived)
        return len(rows) + len(derived)
