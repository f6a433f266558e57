from __future__ import annotations

import datetime as dt
import functools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Mapping, Optional, TypeVar

from src.core.capital_gains import unrealized_gains as _unrealized
from src.core.config import EngineConfig
from src.core.decimal_math import to_decimal
from src.core.errors import (
    EngineError,
    IdempotencyConflict,
    ReferencedTransactionError,
    RoundingToleranceExceeded,
    ValidationError,
)
from src.core.ledger import TransactionLedger
from src.core.records import (
    Adjustment,
    CorporateAction,
    DividendIncome,
    InventoryState,
    Lot,
    RealizedGain,
    Transaction,
    UnrealizedGain,
    WashSaleViolation,
)
from src.core.rebuild import RebuildResult, rebuild
from src.core.symbols import SymbolIdentity, SymbolRegistry
from src.core.tax_planning import HarvestCandidate, ProposedBuy, WashSaleRisk, harvest_candidates, wash_risk_for_loss_sale
from src.core.tax_report import build_tax_report
from src.core.types import TaxReport
from src.utils.time import Clock, SystemClock

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class EngineResult(Generic[T]):
    """Outcome of a collaborator-facing call: a value, or the EngineError that stopped it."""

    value: Optional[T] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def as_json(self) -> dict[str, Any]:
        return {"ok": self.ok, "error": self.error.as_json() if self.error else None}


@dataclass(frozen=True)
class ActionPreview:
    action: CorporateAction
    adjustments: list[Adjustment] = field(default_factory=list)
    new_lots: list[Lot] = field(default_factory=list)
    realized_gains: list[RealizedGain] = field(default_factory=list)
    dividends: list[DividendIncome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _result(fn: Callable[..., T]) -> Callable[..., EngineResult[T]]:
    """Turn EngineError raised by an engine operation into an EngineResult."""

    @functools.wraps(fn)
    def wrapper(self: "CostBasisEngine", *args: Any, **kwargs: Any) -> EngineResult[T]:
        try:
            return EngineResult(value=fn(self, *args, **kwargs))
        except RoundingToleranceExceeded as e:
            log.error("%s failed: %s", fn.__name__, e.message)
            return EngineResult(error=e)
        except EngineError as e:
            log.warning("%s rejected: %s %s", fn.__name__, e.code, e.message)
            return EngineResult(error=e)

    return wrapper


class CostBasisEngine:
    """
    Cost-basis engine for one portfolio.

    State is held per (account_id, symbol_id) and only ever replaced whole: a
    mutating call rebuilds candidate state from the ledger and swaps it in
    after the rebuild succeeds. Readers see the state before or after, never
    a mix.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        identity: Optional[SymbolIdentity] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.identity: SymbolIdentity = identity or SymbolRegistry(allow_unknown=True)
        self.clock: Clock = clock or SystemClock()
        self.ledger = TransactionLedger(self.identity, self.clock)
        self._actions: dict[int, CorporateAction] = {}
        self._action_keys: dict[tuple, int] = {}
        self._next_action_id = 1
        self._states: dict[tuple[str, str], InventoryState] = {}
        # One writer at a time; readers only take _swap_lock.
        self._write_lock = threading.RLock()
        self._swap_lock = threading.Lock()

    # --- scope helpers ---

    def _scope_symbols(self, symbol_ids: Iterable[str], extra_actions: Iterable[CorporateAction] = ()) -> set[str]:
        """Symbols whose lots can interact: substitutes plus merger/spin-off targets, to a fixed point."""
        actions = [*self._actions.values(), *extra_actions]
        scope = set(symbol_ids)
        while True:
            grown = set(scope)
            for s in scope:
                grown |= self.identity.equivalents(s)
            for a in actions:
                related = a.related_symbols()
                if related & grown:
                    grown |= related
            if grown == scope:
                return scope
            scope = grown

    def _accounts_holding(self, symbol_ids: set[str]) -> set[str]:
        out = self.ledger.accounts_for(symbol_ids)
        with self._swap_lock:
            out |= {a for (a, s) in self._states if s in symbol_ids}
        return out

    def _rebuild_account(
        self,
        account_id: str,
        symbols: set[str],
        *,
        extra_txns: Iterable[Transaction] = (),
        extra_actions: Iterable[CorporateAction] = (),
        drop_txn_id: Optional[int] = None,
    ) -> RebuildResult:
        txns = [t for t in self.ledger.list_symbols(account_id, symbols) if t.id != drop_txn_id]
        txns.extend(extra_txns)
        actions = [a for a in [*self._actions.values(), *extra_actions] if a.symbol_id in symbols]
        return rebuild(
            txns,
            actions,
            account_id=account_id,
            config=self.config,
            identity=self.identity,
            symbol_ids=symbols,
        )

    def _swap_in(self, results: Iterable[RebuildResult], symbols: set[str]) -> None:
        with self._swap_lock:
            for res in results:
                for s in symbols | set(res.symbol_ids):
                    self._states[(res.account_id, s)] = res.state_for(s)

    def _state(self, account_id: str, symbol_id: str) -> Optional[InventoryState]:
        with self._swap_lock:
            return self._states.get((account_id, symbol_id))

    def _account_states(self, account_id: str) -> list[InventoryState]:
        with self._swap_lock:
            return [st for (a, _s), st in sorted(self._states.items()) if a == account_id]

    # --- mutating operations ---

    @_result
    def record_transaction(self, txn: Transaction) -> Transaction:
        """Validate, rebuild the affected scope with `txn`, then append it; nothing changes on error."""
        with self._write_lock:
            staged = self.ledger.stage(txn)
            symbols = self._scope_symbols({staged.symbol_id})
            res = self._rebuild_account(staged.account_id, symbols, extra_txns=[staged])
            self.ledger.append(staged)
            self._swap_in([res], symbols)
        log.info(
            "Recorded txn id=%s %s %s %s qty=%s",
            staged.id,
            staged.kind.value,
            staged.account_id,
            staged.symbol_id,
            staged.quantity,
        )
        return staged

    def _stage_action(self, action: CorporateAction) -> CorporateAction:
        action.validate()
        if not self.identity.exists(action.symbol_id):
            raise ValidationError(f"unknown symbol {action.symbol_id!r}", field="symbol_id")
        existing = self._action_keys.get(action.idempotency_key)
        if existing is not None:
            raise IdempotencyConflict(action.idempotency_key, existing)
        if action.id is not None and action.id in self._actions:
            raise IdempotencyConflict(action.idempotency_key, action.id)
        return action if action.id is not None else action.with_id(self._next_action_id)

    def _accept_action(self, action: CorporateAction) -> None:
        # Replaced, not mutated: readers use the dict without taking the write lock.
        self._actions = {**self._actions, int(action.id): action}
        self._action_keys[action.idempotency_key] = int(action.id)
        self._next_action_id = max(self._next_action_id, int(action.id) + 1)

    @_result
    def apply_corporate_action(self, action: CorporateAction) -> CorporateAction:
        """
        Accept an action and rebuild every account holding an affected symbol.

        Back-dated actions are handled the same way: the rebuild replays the
        ledger with the action in ex-date order.
        """
        with self._write_lock:
            staged = self._stage_action(action)
            symbols = self._scope_symbols(staged.related_symbols(), extra_actions=[staged])
            accounts = self._accounts_holding(symbols)
            results = [self._rebuild_account(a, symbols, extra_actions=[staged]) for a in sorted(accounts)]
            self._accept_action(staged)
            self._swap_in(results, symbols)
        log.info(
            "Applied corporate action id=%s %s %s ex_date=%s accounts=%s",
            staged.id,
            staged.kind.value,
            staged.symbol_id,
            staged.ex_date,
            len(accounts),
        )
        return staged

    @_result
    def rebuild_inventory(self, account_id: str, symbol_id: str) -> RebuildResult:
        with self._write_lock:
            symbols = self._scope_symbols({symbol_id})
            res = self._rebuild_account(account_id, symbols)
            self._swap_in([res], symbols)
        return res

    def rebuild_all(self) -> EngineResult[list[RebuildResult]]:
        """Rebuild every account/symbol group in the ledger (used after bulk loads)."""
        out: list[RebuildResult] = []
        seen: set[tuple[str, str]] = set()
        for account_id, symbol_id in self.ledger.scopes():
            if (account_id, symbol_id) in seen:
                continue
            r = self.rebuild_inventory(account_id, symbol_id)
            if not r.ok:
                return EngineResult(value=out, error=r.error)
            seen |= {(account_id, s) for s in r.value.symbol_ids}
            out.append(r.value)
        return EngineResult(value=out)

    def load(self, transactions: Iterable[Transaction], actions: Iterable[CorporateAction]) -> EngineResult[list[RebuildResult]]:
        """Seed an empty engine with persisted history, then rebuild everything."""
        with self._write_lock:
            try:
                for a in sorted(actions, key=lambda x: (x.id or 0)):
                    self._accept_action(self._stage_action(a) if a.id is None else a)
                self.ledger.load(transactions)
            except EngineError as e:
                log.warning("load rejected: %s %s", e.code, e.message)
                return EngineResult(error=e)
            return self.rebuild_all()

    @_result
    def delete_transaction(self, transaction_id: int) -> Transaction:
        with self._write_lock:
            txn = self.ledger.get(transaction_id)
            symbols = self._scope_symbols({txn.symbol_id})
            refs = self._references(txn.account_id, symbols, transaction_id)
            if refs:
                raise ReferencedTransactionError(
                    f"transaction {transaction_id} is referenced by {', '.join(refs)}",
                    transaction_id=transaction_id,
                )
            res = self._rebuild_account(txn.account_id, symbols, drop_txn_id=transaction_id)
            self.ledger.remove(transaction_id)
            self._swap_in([res], symbols)
        log.info("Deleted txn id=%s %s %s", transaction_id, txn.account_id, txn.symbol_id)
        return txn

    def _references(self, account_id: str, symbols: set[str], transaction_id: int) -> list[str]:
        refs: list[str] = []
        for s in sorted(symbols):
            st = self._state(account_id, s)
            if st is None:
                continue
            refs += [f"lot {l.id}" for l in st.lots if l.origin_transaction_id == transaction_id]
            refs += [f"realized gain {g.id}" for g in st.realized_gains if g.sale_transaction_id == transaction_id]
            refs += [
                f"wash sale {w.id}"
                for w in st.wash_sales
                if transaction_id in (w.loss_transaction_id, w.replacement_transaction_id)
            ]
            refs += [f"adjustment {a.id}" for a in st.adjustments if a.wash_sale_transaction_id == transaction_id]
        return refs

    # --- queries ---

    @_result
    def open_lots(self, account_id: str, symbol_id: str) -> list[Lot]:
        st = self._state(account_id, symbol_id)
        return list(st.open_lots()) if st else []

    @_result
    def lots(self, account_id: str, symbol_id: str) -> list[Lot]:
        st = self._state(account_id, symbol_id)
        return list(st.lots) if st else []

    @_result
    def adjustments(self, account_id: str, symbol_id: str) -> list[Adjustment]:
        st = self._state(account_id, symbol_id)
        return list(st.adjustments) if st else []

    @_result
    def realized_gains(self, account_id: str, tax_year: Optional[int] = None) -> list[RealizedGain]:
        rows = [g for st in self._account_states(account_id) for g in st.realized_gains]
        if tax_year is not None:
            rows = [g for g in rows if g.tax_year == tax_year]
        rows.sort(key=lambda g: (g.sale_date, g.id))
        return rows

    @_result
    def wash_sales(self, account_id: str, tax_year: Optional[int] = None) -> list[WashSaleViolation]:
        rows = [w for st in self._account_states(account_id) for w in st.wash_sales]
        if tax_year is not None:
            rows = [w for w in rows if w.tax_year == tax_year]
        rows.sort(key=lambda w: (w.sale_date, w.id))
        return rows

    @_result
    def dividend_income(self, account_id: str, tax_year: Optional[int] = None) -> list[DividendIncome]:
        rows = [d for st in self._account_states(account_id) for d in st.dividends]
        if tax_year is not None:
            rows = [d for d in rows if d.pay_date.year == tax_year]
        rows.sort(key=lambda d: (d.pay_date, d.id))
        return rows

    @_result
    def tax_report(self, account_id: str, tax_year: int) -> TaxReport:
        states = self._account_states(account_id)
        warnings = sorted({w for st in states for w in st.warnings})
        return build_tax_report(
            account_id=account_id,
            tax_year=tax_year,
            gains=[g for st in states for g in st.realized_gains],
            violations=[w for st in states for w in st.wash_sales],
            dividends=[d for st in states for d in st.dividends],
            config=self.config,
            warnings=warnings,
        )

    @_result
    def unrealized_gains(
        self,
        account_id: str,
        symbol_id: str,
        price: Any,
        as_of: Optional[dt.date] = None,
    ) -> list[UnrealizedGain]:
        st = self._state(account_id, symbol_id)
        if st is None:
            return []
        return _unrealized(
            st.open_lots(),
            price=to_decimal(price, field="price"),
            as_of=as_of or self.clock.today(),
            long_term_days=self.config.long_term_days,
        )

    def _account_transactions(self, account_id: str, symbol_ids: Optional[Iterable[str]] = None) -> list[Transaction]:
        if symbol_ids is None:
            symbol_ids = [s for (a, s) in self.ledger.scopes() if a == account_id]
        return self.ledger.list_symbols(account_id, symbol_ids)

    @_result
    def wash_sale_risk(
        self,
        account_id: str,
        symbol_id: str,
        sale_date: Optional[dt.date] = None,
        proposed_buys: Iterable[ProposedBuy] = (),
    ) -> WashSaleRisk:
        """Pre-trade check: would a loss sale of `symbol_id` (plus `proposed_buys`) be a wash sale?"""
        if not self.identity.exists(symbol_id):
            raise ValidationError(f"unknown symbol {symbol_id!r}", field="symbol_id")
        return wash_risk_for_loss_sale(
            self._account_transactions(account_id, self._scope_symbols({symbol_id})),
            identity=self.identity,
            account_id=account_id,
            symbol_id=symbol_id,
            sale_date=sale_date or self.clock.today(),
            proposed_buys=proposed_buys,
            window_days=self.config.wash_sale_window_days,
            include_reinvestments=self.config.wash_sale_include_reinvestments,
        )

    @_result
    def harvest_candidates(
        self,
        account_id: str,
        prices: Mapping[str, Any],
        threshold: Any = None,
        as_of: Optional[dt.date] = None,
    ) -> list[HarvestCandidate]:
        """Open positions whose sale at `prices` would realize a loss beyond `threshold`."""
        parsed = {s: to_decimal(p, field=f"price[{s}]") for s, p in prices.items()}
        limit = self.config.harvest_loss_threshold if threshold is None else to_decimal(threshold, field="threshold")
        if limit < 0:
            raise ValidationError(f"threshold must be >= 0, got {limit}", field="threshold")
        return harvest_candidates(
            [l for st in self._account_states(account_id) for l in st.open_lots()],
            self._account_transactions(account_id),
            identity=self.identity,
            account_id=account_id,
            prices=parsed,
            as_of=as_of or self.clock.today(),
            threshold=limit,
            window_days=self.config.wash_sale_window_days,
            long_term_days=self.config.long_term_days,
            include_reinvestments=self.config.wash_sale_include_reinvestments,
        )

    @_result
    def preview_corporate_action(self, account_id: str, action: CorporateAction) -> ActionPreview:
        """What `action` would do to `account_id`, computed on a copy; engine state is untouched."""
        staged = self._stage_action(action)
        symbols = self._scope_symbols(staged.related_symbols(), extra_actions=[staged])
        res = self._rebuild_account(account_id, symbols, extra_actions=[staged])
        aid = staged.id
        return ActionPreview(
            action=staged,
            adjustments=[a for a in res.adjustments if a.corporate_action_id == aid],
            new_lots=[l for l in res.lots if l.origin_corporate_action_id == aid],
            realized_gains=[g for g in res.realized_gains if g.corporate_action_id == aid],
            dividends=[d for d in res.dividends if d.corporate_action_id == aid],
            warnings=[w for w in res.warnings if f" {aid} " in w],
        )

    def corporate_actions(self, symbol_id: Optional[str] = None) -> list[CorporateAction]:
        rows = [a for a in self._actions.values() if symbol_id is None or a.symbol_id == symbol_id]
        return sorted(rows, key=lambda a: (a.ex_date, a.id))

    def accounts(self) -> list[str]:
        with self._swap_lock:
            return sorted({a for (a, _s) in self._states} | {a for (a, _s) in self.ledger.scopes()})

    def states(self, account_id: str) -> list[InventoryState]:
        return self._account_states(account_id)
