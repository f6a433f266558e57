from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from decimal import Decimal
from typing import Optional

from src.core.decimal_math import ZERO, div, sub, total
from src.core.errors import EngineError, OversellError, UnknownEntityError, ValidationError
from src.core.records import Adjustment, AdjustmentSource, Lot, LotMatch, Transaction

log = logging.getLogger(__name__)


def fifo_key(lot: Lot) -> tuple[dt.date, int]:
    return (lot.acquisition_date, lot.sequence)


def unit_cost_for_buy(txn: Transaction) -> Decimal:
    """(total_amount + fee) / quantity, at full precision."""
    return div(txn.cost_total, txn.quantity)


class LotTracker:
    """
    Working lot inventory for one account during a rebuild.

    Lots are replaced, never mutated in place; every quantity or basis change
    after creation goes through `adjust`, which records one Adjustment.
    """

    def __init__(self, account_id: str, *, quantity_epsilon: Decimal = ZERO) -> None:
        self.account_id = account_id
        self.quantity_epsilon = quantity_epsilon
        self._lots: dict[str, Lot] = {}
        self._adjustments: list[Adjustment] = []
        self._adj_count: dict[str, int] = {}
        self._seq = 0

    # --- creation ---

    def open_lot(
        self,
        *,
        lot_id: str,
        symbol_id: str,
        quantity: Decimal,
        unit_cost_basis: Decimal,
        acquisition_date: dt.date,
        holding_period_start: Optional[dt.date] = None,
        origin_transaction_id: Optional[int] = None,
        origin_corporate_action_id: Optional[int] = None,
        parent_lot_id: Optional[str] = None,
    ) -> Lot:
        if quantity <= 0:
            raise ValidationError(f"lot {lot_id} quantity must be positive, got {quantity}")
        if unit_cost_basis < 0:
            raise ValidationError(f"lot {lot_id} basis must be >= 0, got {unit_cost_basis}")
        if lot_id in self._lots:
            raise EngineError(f"lot {lot_id} already exists")
        self._seq += 1
        lot = Lot(
            id=lot_id,
            account_id=self.account_id,
            symbol_id=symbol_id,
            origin_transaction_id=origin_transaction_id,
            origin_corporate_action_id=origin_corporate_action_id,
            parent_lot_id=parent_lot_id,
            acquisition_date=acquisition_date,
            holding_period_start=holding_period_start or acquisition_date,
            original_quantity=quantity,
            remaining_quantity=quantity,
            unit_cost_basis=unit_cost_basis,
            sequence=self._seq,
        )
        self._lots[lot_id] = lot
        log.debug("Open lot %s %s qty=%s basis=%s", lot_id, symbol_id, quantity, unit_cost_basis)
        return lot

    def open_from_transaction(self, txn: Transaction) -> Lot:
        return self.open_lot(
            lot_id=f"T{txn.id}",
            symbol_id=txn.symbol_id,
            quantity=txn.quantity,
            unit_cost_basis=unit_cost_for_buy(txn),
            acquisition_date=txn.trade_date,
            origin_transaction_id=txn.id,
        )

    # --- queries ---

    def get(self, lot_id: str) -> Lot:
        lot = self._lots.get(lot_id)
        if lot is None:
            raise UnknownEntityError(f"lot {lot_id} not found", lot_id=lot_id)
        return lot

    def lots(self, symbol_id: Optional[str] = None) -> list[Lot]:
        rows = [l for l in self._lots.values() if symbol_id is None or l.symbol_id == symbol_id]
        rows.sort(key=fifo_key)
        return rows

    def open_lots(self, symbol_id: str, *, acquired_on_or_before: Optional[dt.date] = None) -> list[Lot]:
        """Open lots of `symbol_id` in FIFO order (acquisition date, then creation order)."""
        rows = [
            l
            for l in self._lots.values()
            if l.symbol_id == symbol_id
            and l.remaining_quantity > 0
            and (acquired_on_or_before is None or l.acquisition_date <= acquired_on_or_before)
        ]
        rows.sort(key=fifo_key)
        return rows

    def open_quantity(self, symbol_id: str) -> Decimal:
        return total(l.remaining_quantity for l in self.open_lots(symbol_id))

    def adjustments(self) -> list[Adjustment]:
        return list(self._adjustments)

    def mark(self) -> tuple[int, int]:
        return self._seq, len(self._adjustments)

    def changes_since(self, mark: tuple[int, int]) -> tuple[list[Lot], list[Adjustment]]:
        """Lots opened and adjustments recorded after `mark`."""
        seq, n = mark
        return [l for l in self.lots() if l.sequence > seq], self._adjustments[n:]

    # --- mutation ---

    def adjust(
        self,
        lot_id: str,
        *,
        source: AdjustmentSource,
        applied_at: dt.date,
        new_quantity: Optional[Decimal] = None,
        new_basis: Optional[Decimal] = None,
        holding_period_start: Optional[dt.date] = None,
        corporate_action_id: Optional[int] = None,
        wash_sale_transaction_id: Optional[int] = None,
        note: str = "",
    ) -> Adjustment:
        lot = self.get(lot_id)
        if lot.is_closed:
            raise EngineError(f"lot {lot_id} is closed and cannot be adjusted", lot_id=lot_id)
        qty = lot.remaining_quantity if new_quantity is None else new_quantity
        basis = lot.unit_cost_basis if new_basis is None else new_basis
        if qty < 0 or basis < 0:
            raise EngineError(f"adjustment would make lot {lot_id} negative (qty={qty}, basis={basis})", lot_id=lot_id)

        k = self._adj_count.get(lot_id, 0) + 1
        self._adj_count[lot_id] = k
        adj = Adjustment(
            id=f"{lot_id}/adj{k}",
            affected_lot_id=lot_id,
            source=source,
            corporate_action_id=corporate_action_id,
            wash_sale_transaction_id=wash_sale_transaction_id,
            old_quantity=lot.remaining_quantity,
            old_basis=lot.unit_cost_basis,
            new_quantity=qty,
            new_basis=basis,
            applied_at=applied_at,
            note=note,
        )
        changes: dict = {"remaining_quantity": qty, "unit_cost_basis": basis}
        if holding_period_start is not None:
            changes["holding_period_start"] = holding_period_start
        if qty > lot.original_quantity:
            changes["original_quantity"] = qty
        self._lots[lot_id] = dataclasses.replace(lot, **changes)
        self._adjustments.append(adj)
        return adj

    def consume_fifo(self, symbol_id: str, quantity: Decimal, *, transaction_id: Optional[int] = None) -> list[LotMatch]:
        """
        Take `quantity` shares from the oldest open lots first.

        Raises OversellError (leaving every lot untouched) when the open
        quantity is short by more than `quantity_epsilon`.
        """
        if quantity <= 0:
            raise ValidationError(f"sell quantity must be positive, got {quantity}")
        lots = self.open_lots(symbol_id)
        available = total(l.remaining_quantity for l in lots)
        if available < quantity and sub(quantity, available) > self.quantity_epsilon:
            raise OversellError(
                account_id=self.account_id,
                symbol_id=symbol_id,
                requested=quantity,
                available=available,
                transaction_id=transaction_id,
            )

        matches: list[LotMatch] = []
        outstanding = quantity
        for lot in lots:
            if outstanding <= 0:
                break
            # A sub-epsilon shortfall (repeated ratio division) is left unmatched.
            take = min(lot.remaining_quantity, outstanding)
            matches.append(
                LotMatch(
                    lot_id=lot.id,
                    symbol_id=lot.symbol_id,
                    quantity=take,
                    unit_cost_basis=lot.unit_cost_basis,
                    acquisition_date=lot.acquisition_date,
                    holding_period_start=lot.holding_period_start,
                )
            )
            self._lots[lot.id] = dataclasses.replace(lot, remaining_quantity=sub(lot.remaining_quantity, take))
            log.debug("FIFO match txn=%s lot=%s take=%s", transaction_id, lot.id, take)
            outstanding = sub(outstanding, take)
        return matches

    def snapshot(self) -> tuple[tuple[Lot, ...], tuple[Adjustment, ...]]:
        return tuple(self.lots()), tuple(self._adjustments)
