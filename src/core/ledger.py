from __future__ import annotations

import bisect
import dataclasses
import logging
import threading
from collections.abc import Iterable
from typing import Optional

from src.core.decimal_math import ZERO, mul
from src.core.errors import UnknownEntityError, ValidationError
from src.core.records import Transaction, TransactionKind
from src.core.symbols import SymbolIdentity
from src.utils.time import Clock, SystemClock

log = logging.getLogger(__name__)


def _order_key(t: Transaction) -> tuple:
    return (t.trade_date, t.id)


def validate_transaction(txn: Transaction, *, identity: SymbolIdentity, clock: Clock) -> Transaction:
    """
    Check a transaction before it enters the ledger; returns it normalized.

    A Buy/Sell given only `unit_price` gets `total_amount = |quantity| * unit_price`.
    """
    if not (txn.account_id or "").strip():
        raise ValidationError("account_id is required", field="account_id")
    if not (txn.symbol_id or "").strip():
        raise ValidationError("symbol_id is required", field="symbol_id")
    if not identity.exists(txn.symbol_id):
        raise ValidationError(f"unknown symbol {txn.symbol_id!r}", field="symbol_id")

    as_of = clock.today()
    if txn.trade_date > as_of:
        raise ValidationError(f"trade_date {txn.trade_date} is after as-of date {as_of}", field="trade_date")

    for name in ("unit_price", "total_amount", "fee"):
        if getattr(txn, name) < 0:
            raise ValidationError(f"{name} must be >= 0", field=name)

    kind = txn.kind
    q = txn.quantity
    if kind == TransactionKind.BUY and q <= 0:
        raise ValidationError(f"BUY quantity must be positive, got {q}", field="quantity")
    if kind == TransactionKind.SELL and q >= 0:
        raise ValidationError(f"SELL quantity must be negative, got {q}", field="quantity")
    if kind == TransactionKind.DIVIDEND and q < 0:
        raise ValidationError(f"DIVIDEND quantity must be >= 0 (positive for reinvestment), got {q}", field="quantity")
    if kind == TransactionKind.FEE and q != 0:
        raise ValidationError(f"FEE quantity must be zero, got {q}", field="quantity")
    if kind in (TransactionKind.SPLIT_ADJUSTMENT, TransactionKind.MERGER_ADJUSTMENT) and txn.corporate_action_id is None:
        raise ValidationError(f"{kind.value} requires corporate_action_id", field="corporate_action_id")

    if kind in (TransactionKind.BUY, TransactionKind.SELL) and txn.total_amount == ZERO and txn.unit_price > 0:
        txn = dataclasses.replace(txn, total_amount=mul(abs(q), txn.unit_price))
    return txn


class TransactionLedger:
    """
    Append-only transaction log, kept per (account_id, symbol_id) in
    (trade_date, insertion order). Ids are assigned on acceptance and never reused.
    """

    def __init__(self, identity: SymbolIdentity, clock: Optional[Clock] = None) -> None:
        self.identity = identity
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._by_scope: dict[tuple[str, str], list[Transaction]] = {}
        self._by_id: dict[int, Transaction] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._by_id)

    def stage(self, txn: Transaction) -> Transaction:
        """Validate and reserve an id for `txn` without storing it; a reserved id is never handed out again."""
        txn = validate_transaction(txn, identity=self.identity, clock=self.clock)
        with self._lock:
            if txn.id is None:
                txn = dataclasses.replace(txn, id=self._next_id)
                self._next_id += 1
                return txn
            if txn.id in self._by_id:
                raise ValidationError(f"transaction id {txn.id} already recorded", field="id")
            return txn

    def append(self, txn: Transaction) -> int:
        with self._lock:
            staged = self.stage(txn)
            self._insert(staged)
            log.debug("Ledger append id=%s %s %s %s qty=%s", staged.id, staged.kind.value, staged.account_id, staged.symbol_id, staged.quantity)
            return int(staged.id)

    def load(self, txns: Iterable[Transaction]) -> int:
        """Bulk-load persisted transactions (ids already assigned); skips the as-of check."""
        n = 0
        with self._lock:
            for t in txns:
                if t.id is None:
                    raise ValidationError("persisted transaction is missing its id")
                if t.id in self._by_id:
                    raise ValidationError(f"transaction id {t.id} already recorded", field="id")
                self._insert(t)
                n += 1
        return n

    def _insert(self, txn: Transaction) -> None:
        rows = self._by_scope.setdefault(txn.scope, [])
        bisect.insort(rows, txn, key=_order_key)
        self._by_id[int(txn.id)] = txn
        self._next_id = max(self._next_id, int(txn.id) + 1)

    def get(self, transaction_id: int) -> Transaction:
        with self._lock:
            txn = self._by_id.get(transaction_id)
        if txn is None:
            raise UnknownEntityError(f"transaction {transaction_id} not found", transaction_id=transaction_id)
        return txn

    def list(self, account_id: str, symbol_id: str) -> list[Transaction]:
        with self._lock:
            return list(self._by_scope.get((account_id, symbol_id), ()))

    def list_symbols(self, account_id: str, symbol_ids: Iterable[str]) -> list[Transaction]:
        out: list[Transaction] = []
        with self._lock:
            for s in set(symbol_ids):
                out.extend(self._by_scope.get((account_id, s), ()))
        out.sort(key=_order_key)
        return out

    def accounts_for(self, symbol_ids: Iterable[str]) -> set[str]:
        wanted = set(symbol_ids)
        with self._lock:
            return {a for (a, s), rows in self._by_scope.items() if s in wanted and rows}

    def scopes(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(k for k, rows in self._by_scope.items() if rows)

    def remove(self, transaction_id: int) -> Transaction:
        with self._lock:
            txn = self.get(transaction_id)
            rows = self._by_scope[txn.scope]
            rows.remove(txn)
            del self._by_id[transaction_id]
        return txn
