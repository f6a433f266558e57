from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from src.core.capital_gains import realize_sale
from src.core.config import EngineConfig
from src.core.corporate_actions import ActionContext, process_action
from src.core.lots import LotTracker
from src.core.records import (
    Adjustment,
    CorporateAction,
    DividendIncome,
    InventoryState,
    Lot,
    RealizedGain,
    Transaction,
    TransactionKind,
    WashSaleViolation,
)
from src.core.symbols import SymbolIdentity
from src.core.wash_sale import WashSaleDetector

log = logging.getLogger(__name__)

Event = Union[Transaction, CorporateAction]


def timeline_key(event: Event) -> tuple:
    # Same-day ordering: every transaction dated on or before an ex-date is seen before the action.
    if isinstance(event, Transaction):
        return (event.trade_date, 0, event.id)
    return (event.ex_date, 1, event.id)


@dataclass(frozen=True)
class RebuildResult:
    account_id: str
    symbol_ids: tuple[str, ...]
    transactions_scanned: int
    actions_applied: int
    lots: tuple[Lot, ...]
    adjustments: tuple[Adjustment, ...]
    realized_gains: tuple[RealizedGain, ...]
    wash_sales: tuple[WashSaleViolation, ...]
    dividends: tuple[DividendIncome, ...]
    warnings: list[str] = field(default_factory=list)

    def as_json(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "symbol_ids": list(self.symbol_ids),
            "transactions_scanned": self.transactions_scanned,
            "actions_applied": self.actions_applied,
            "lots": len(self.lots),
            "open_lots": sum(1 for l in self.lots if not l.is_closed),
            "adjustments": len(self.adjustments),
            "realized_gains": len(self.realized_gains),
            "wash_sales": len(self.wash_sales),
            "dividends": len(self.dividends),
            "warnings": self.warnings,
        }

    def state_for(self, symbol_id: str) -> InventoryState:
        lots = tuple(l for l in self.lots if l.symbol_id == symbol_id)
        lot_ids = {l.id for l in lots}
        gains = tuple(g for g in self.realized_gains if g.symbol_id == symbol_id)
        gain_ids = {g.id for g in gains}
        return InventoryState(
            account_id=self.account_id,
            symbol_id=symbol_id,
            lots=lots,
            adjustments=tuple(a for a in self.adjustments if a.affected_lot_id in lot_ids),
            realized_gains=gains,
            wash_sales=tuple(w for w in self.wash_sales if w.loss_gain_id in gain_ids),
            dividends=tuple(d for d in self.dividends if d.symbol_id == symbol_id),
            warnings=tuple(self.warnings),
        )


def rebuild(
    transactions: Iterable[Transaction],
    actions: Iterable[CorporateAction],
    *,
    account_id: str,
    config: EngineConfig,
    identity: SymbolIdentity,
    symbol_ids: Iterable[str] = (),
) -> RebuildResult:
    """
    Recompute one account's inventory from scratch.

    Pure: the same ledger and actions always give the same result. Raises the
    first EngineError hit (e.g. OversellError); nothing partial is returned.
    """
    txns = [t for t in transactions if t.account_id == account_id]
    acts = list(actions)
    events: list[Event] = sorted([*txns, *acts], key=timeline_key)
    action_ids = {a.id for a in acts}

    tracker = LotTracker(account_id, quantity_epsilon=config.quantity_epsilon)
    gains: list[RealizedGain] = []
    warnings: list[str] = []
    ctx = ActionContext(tracker=tracker, config=config, gains=gains, warnings=warnings)
    wash = WashSaleDetector(tracker, identity=identity, config=config, gains=gains)

    for ev in events:
        if not isinstance(ev, Transaction):
            mark = tracker.mark()
            process_action(ev, ctx)
            wash.on_action(ev, *tracker.changes_since(mark))
            continue
        kind = ev.kind
        if kind == TransactionKind.BUY:
            lot = tracker.open_from_transaction(ev)
            wash.on_purchase(ev, lot)
        elif kind == TransactionKind.DIVIDEND:
            if ev.quantity > 0:
                lot = tracker.open_from_transaction(ev)
                if config.wash_sale_include_reinvestments:
                    wash.on_purchase(ev, lot)
        elif kind == TransactionKind.SELL:
            matches = tracker.consume_fifo(ev.symbol_id, abs(ev.quantity), transaction_id=ev.id)
            start = len(gains)
            gains.extend(realize_sale(ev, matches, long_term_days=config.long_term_days))
            wash.on_sale(ev, list(range(start, len(gains))))
        elif kind in (TransactionKind.SPLIT_ADJUSTMENT, TransactionKind.MERGER_ADJUSTMENT):
            if ev.corporate_action_id not in action_ids:
                warnings.append(
                    f"{kind.value} txn_id={ev.id} references corporate action {ev.corporate_action_id}, which is not recorded for {ev.symbol_id}."
                )
        # FEE and cash DIVIDEND rows carry no lot effect.

    lots, adjustments = tracker.snapshot()
    symbols = set(symbol_ids) | {t.symbol_id for t in txns} | {l.symbol_id for l in lots}
    res = RebuildResult(
        account_id=account_id,
        symbol_ids=tuple(sorted(symbols)),
        transactions_scanned=len(txns),
        actions_applied=len(acts),
        lots=lots,
        adjustments=adjustments,
        realized_gains=tuple(gains),
        wash_sales=tuple(wash.violations),
        dividends=tuple(ctx.dividends),
        warnings=warnings,
    )
    log.info(
        "Rebuilt account=%s symbols=%s txns=%s actions=%s lots=%s gains=%s wash=%s",
        account_id,
        ",".join(res.symbol_ids),
        res.transactions_scanned,
        res.actions_applied,
        len(res.lots),
        len(res.realized_gains),
        len(res.wash_sales),
    )
    return res
