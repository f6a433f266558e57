from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from src.core.config import EngineConfig
from src.core.decimal_math import ONE, ZERO, add, div, is_zero, mul, sub
from src.core.lots import LotTracker
from src.core.records import (
    Adjustment,
    AdjustmentSource,
    CorporateAction,
    HoldingPeriod,
    Lot,
    Merger,
    RealizedGain,
    Split,
    StockDividend,
    Transaction,
    WashSaleViolation,
)
from src.core.symbols import SymbolIdentity, substantially_identical

log = logging.getLogger(__name__)


@dataclass
class PendingLoss:
    """Loss shares not yet matched to a replacement purchase."""

    gain_index: int
    loss_transaction_id: int
    loss_lot_id: str
    symbol_id: str
    sale_date: dt.date
    holding_period_start: dt.date
    holding_period: HoldingPeriod
    shares: Decimal  # in current (post-split) share units
    loss: Decimal  # positive, unmatched part of the loss


@dataclass
class _Purchase:
    lot_id: str
    transaction_id: int
    trade_date: dt.date
    quantity: Decimal  # replacement-eligible shares, current units


def share_factor(action: CorporateAction) -> Optional[Decimal]:
    """Shares held after `action` per share held before, for actions that keep the symbol."""
    if isinstance(action, Split):
        return div(action.ratio_to, action.ratio_from)
    if isinstance(action, StockDividend):
        return add(ONE, action.shares_per_share)
    return None


class WashSaleDetector:
    """
    Wash-sale matching run chronologically inside a rebuild.

    A loss is matched first against replacement lots bought up to `window`
    days before the sale that are still held, then against purchases made up
    to `window` days after, as they arrive. Losses are consumed in sale order
    and each replacement share absorbs at most one loss, so a deferred loss is
    never deferred twice.

    Share counts (pending loss shares, replacement capacity) follow splits and
    stock dividends, so a replacement bought before a 1:2 split can absorb
    twice as many post-split loss shares.
    """

    def __init__(
        self,
        tracker: LotTracker,
        *,
        identity: SymbolIdentity,
        config: EngineConfig,
        gains: list[RealizedGain],
    ) -> None:
        self.tracker = tracker
        self.identity = identity
        self.config = config
        self.window = dt.timedelta(days=config.wash_sale_window_days)
        self.gains = gains
        self.pending: list[PendingLoss] = []
        self.violations: list[WashSaleViolation] = []
        self._purchases: list[_Purchase] = []
        self._used: dict[str, Decimal] = {}
        self._carved: dict[str, int] = {}

    def _identical(self, a: str, b: str) -> bool:
        ok, _reason = substantially_identical(self.identity, symbol_a=a, symbol_b=b)
        return ok

    def _capacity(self, p: _Purchase) -> Decimal:
        lot = self.tracker.get(p.lot_id)
        return max(ZERO, min(lot.remaining_quantity, sub(p.quantity, self._used.get(p.lot_id, ZERO))))

    def _unused_fraction(self, p: _Purchase, held: Decimal) -> Decimal:
        if held <= 0:
            return ZERO
        cap = max(ZERO, min(held, sub(p.quantity, self._used.get(p.lot_id, ZERO))))
        return div(cap, held)

    def _drop_settled(self) -> None:
        eps = self.config.quantity_epsilon
        self.pending = [pl for pl in self.pending if not is_zero(pl.shares, eps)]

    def on_purchase(self, txn: Transaction, lot: Lot) -> None:
        """Register a replacement candidate and let it absorb pending losses within the window."""
        if txn.id is None:
            return
        p = _Purchase(lot_id=lot.id, transaction_id=int(txn.id), trade_date=txn.trade_date, quantity=lot.original_quantity)
        self._purchases.append(p)
        self.pending = [pl for pl in self.pending if pl.sale_date + self.window >= txn.trade_date]
        for pl in list(self.pending):
            if pl.sale_date > txn.trade_date or not self._identical(pl.symbol_id, lot.symbol_id):
                continue
            cap = self._capacity(p)
            if cap <= 0:
                break
            self._match(pl, p, min(cap, pl.shares), on=txn.trade_date)
        self._drop_settled()

    def on_sale(self, txn: Transaction, gain_indexes: list[int]) -> None:
        """Check the loss fragments of a sale against purchases already made."""
        for idx in gain_indexes:
            g = self.gains[idx]
            if g.gain_or_loss >= 0:
                continue
            pl = PendingLoss(
                gain_index=idx,
                loss_transaction_id=int(txn.id),
                loss_lot_id=g.lot_id,
                symbol_id=g.symbol_id,
                sale_date=g.sale_date,
                holding_period_start=g.holding_period_start,
                holding_period=g.holding_period,
                shares=g.quantity_matched,
                loss=abs(g.gain_or_loss),
            )
            start = txn.trade_date - self.window
            loss_origin = self.tracker.get(g.lot_id).origin_transaction_id
            for p in sorted(self._purchases, key=lambda x: (x.trade_date, self.tracker.get(x.lot_id).sequence)):
                if pl.shares <= 0:
                    break
                if p.lot_id == g.lot_id or p.transaction_id == loss_origin:
                    continue
                if not (start <= p.trade_date <= txn.trade_date):
                    continue
                if not self._identical(pl.symbol_id, self.tracker.get(p.lot_id).symbol_id):
                    continue
                cap = self._capacity(p)
                if cap <= 0:
                    continue
                self._match(pl, p, min(cap, pl.shares), on=txn.trade_date)
            if not is_zero(pl.shares, self.config.quantity_epsilon):
                self.pending.append(pl)

    def on_action(self, action: CorporateAction, new_lots: list[Lot], adjustments: list[Adjustment]) -> None:
        """
        Restate share counts after a corporate action.

        Pending losses of the symbol scale by the split/stock-dividend factor.
        Replacement purchases scale with their lot's quantity; a stock-dividend
        or merger child of a replacement lot inherits its unused share.
        """
        factor = share_factor(action)
        if factor is not None:
            for pl in self.pending:
                if pl.symbol_id == action.symbol_id:
                    pl.shares = mul(pl.shares, factor)

        by_lot = {p.lot_id: p for p in self._purchases}
        unused: dict[str, Decimal] = {}
        for adj in adjustments:
            p = by_lot.get(adj.affected_lot_id)
            if p is None or adj.old_quantity <= 0 or adj.new_quantity == adj.old_quantity:
                continue
            if p.lot_id not in unused:
                unused[p.lot_id] = self._unused_fraction(p, adj.old_quantity)
            if adj.new_quantity > 0:
                r = div(adj.new_quantity, adj.old_quantity)
                p.quantity = mul(p.quantity, r)
                if p.lot_id in self._used:
                    self._used[p.lot_id] = mul(self._used[p.lot_id], r)

        if not isinstance(action, (StockDividend, Merger)):
            return
        for lot in new_lots:
            p = by_lot.get(lot.parent_lot_id or "")
            if p is None:
                continue
            if p.lot_id in unused:
                frac = unused[p.lot_id]
            else:
                frac = self._unused_fraction(p, self.tracker.get(p.lot_id).remaining_quantity)
            if frac <= 0:
                continue
            self._purchases.append(
                _Purchase(
                    lot_id=lot.id,
                    transaction_id=p.transaction_id,
                    trade_date=p.trade_date,
                    quantity=mul(lot.original_quantity, frac),
                )
            )

    def _carve(self, lot: Lot, shares: Decimal, *, on: dt.date, loss_transaction_id: int) -> Lot:
        """Move `shares` of `lot` into a child lot so the disallowed loss lands only on them."""
        k = self._carved.get(lot.id, 0) + 1
        self._carved[lot.id] = k
        child_id = f"{lot.id}.W{k}"
        self.tracker.adjust(
            lot.id,
            source=AdjustmentSource.WASH_SALE,
            applied_at=on,
            new_quantity=sub(lot.remaining_quantity, shares),
            wash_sale_transaction_id=loss_transaction_id,
            note=f"{shares} replacement shares moved to {child_id}",
        )
        return self.tracker.open_lot(
            lot_id=child_id,
            symbol_id=lot.symbol_id,
            quantity=shares,
            unit_cost_basis=lot.unit_cost_basis,
            acquisition_date=lot.acquisition_date,
            holding_period_start=lot.holding_period_start,
            origin_transaction_id=lot.origin_transaction_id,
            origin_corporate_action_id=lot.origin_corporate_action_id,
            parent_lot_id=lot.id,
        )

    def _match(self, pl: PendingLoss, p: _Purchase, shares: Decimal, *, on: dt.date) -> None:
        disallowed = pl.loss if shares == pl.shares else div(mul(pl.loss, shares), pl.shares)
        lot = self.tracker.get(p.lot_id)
        if shares < lot.remaining_quantity:
            lot = self._carve(lot, shares, on=on, loss_transaction_id=pl.loss_transaction_id)
            p.quantity = sub(p.quantity, shares)
        else:
            self._used[p.lot_id] = add(self._used.get(p.lot_id, ZERO), shares)

        new_start = None
        if self.config.wash_sale_carry_holding_period:
            held = pl.sale_date - pl.holding_period_start
            carried = lot.holding_period_start - held
            if carried < lot.holding_period_start:
                new_start = carried

        self.tracker.adjust(
            lot.id,
            source=AdjustmentSource.WASH_SALE,
            applied_at=on,
            new_basis=add(lot.unit_cost_basis, div(disallowed, lot.remaining_quantity)),
            holding_period_start=new_start,
            wash_sale_transaction_id=pl.loss_transaction_id,
            note=f"disallowed loss {disallowed} from lot {pl.loss_lot_id}",
        )
        g = self.gains[pl.gain_index]
        self.gains[pl.gain_index] = dataclasses.replace(g, disallowed_loss=add(g.disallowed_loss, disallowed))

        self.violations.append(
            WashSaleViolation(
                id=f"W{pl.loss_transaction_id}:{pl.loss_lot_id}:{lot.id}",
                account_id=lot.account_id,
                loss_transaction_id=pl.loss_transaction_id,
                loss_gain_id=g.id,
                replacement_transaction_id=p.transaction_id,
                adjusted_replacement_lot_id=lot.id,
                replacement_shares=shares,
                disallowed_loss=disallowed,
                sale_date=pl.sale_date,
                replacement_date=p.trade_date,
                holding_period=pl.holding_period,
            )
        )
        pl.shares = sub(pl.shares, shares)
        pl.loss = sub(pl.loss, disallowed)
        log.info(
            "Wash sale: loss txn=%s lot=%s -> replacement lot=%s shares=%s disallowed=%s",
            pl.loss_transaction_id,
            pl.loss_lot_id,
            lot.id,
            shares,
            disallowed,
        )
