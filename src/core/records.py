from __future__ import annotations

import dataclasses
import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional

from src.core.decimal_math import ONE, ZERO, add, mul, to_decimal
from src.core.errors import ValidationError


class TransactionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    FEE = "FEE"
    SPLIT_ADJUSTMENT = "SPLIT_ADJUSTMENT"
    MERGER_ADJUSTMENT = "MERGER_ADJUSTMENT"


class LotStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_CONSUMED = "PARTIALLY_CONSUMED"
    CLOSED = "CLOSED"


class HoldingPeriod(str, Enum):
    SHORT_TERM = "ST"
    LONG_TERM = "LT"


class ActionKind(str, Enum):
    SPLIT = "SPLIT"
    CASH_DIVIDEND = "CASH_DIVIDEND"
    STOCK_DIVIDEND = "STOCK_DIVIDEND"
    RETURN_OF_CAPITAL = "RETURN_OF_CAPITAL"
    MERGER = "MERGER"
    SPINOFF = "SPINOFF"


class AdjustmentSource(str, Enum):
    SPLIT = "SPLIT"
    STOCK_DIVIDEND = "STOCK_DIVIDEND"
    RETURN_OF_CAPITAL = "RETURN_OF_CAPITAL"
    MERGER = "MERGER"
    SPINOFF = "SPINOFF"
    WASH_SALE = "WASH_SALE"


class DividendClass(str, Enum):
    QUALIFIED = "QUALIFIED"
    ORDINARY = "ORDINARY"


def _coerce(obj: Any, *names: str, optional: bool = False) -> None:
    for name in names:
        v = getattr(obj, name)
        if v is None and optional:
            continue
        object.__setattr__(obj, name, to_decimal(v, field=name))


# --- Ledger ---


@dataclass(frozen=True, kw_only=True)
class Transaction:
    account_id: str
    symbol_id: str
    kind: TransactionKind
    quantity: Decimal
    unit_price: Decimal = ZERO
    total_amount: Decimal = ZERO
    fee: Decimal = ZERO
    trade_date: dt.date
    corporate_action_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", TransactionKind(self.kind))
        _coerce(self, "quantity", "unit_price", "total_amount", "fee")

    @classmethod
    def buy(cls, account_id: str, symbol_id: str, quantity: Any, unit_price: Any, trade_date: dt.date, *, fee: Any = 0) -> "Transaction":
        qty = to_decimal(quantity, field="quantity")
        price = to_decimal(unit_price, field="unit_price")
        return cls(
            account_id=account_id,
            symbol_id=symbol_id,
            kind=TransactionKind.BUY,
            quantity=qty,
            unit_price=price,
            total_amount=mul(qty, price),
            fee=fee,
            trade_date=trade_date,
        )

    @classmethod
    def sell(cls, account_id: str, symbol_id: str, quantity: Any, unit_price: Any, trade_date: dt.date, *, fee: Any = 0) -> "Transaction":
        """`quantity` is the number of shares sold; it is stored negated."""
        qty = to_decimal(quantity, field="quantity")
        price = to_decimal(unit_price, field="unit_price")
        return cls(
            account_id=account_id,
            symbol_id=symbol_id,
            kind=TransactionKind.SELL,
            quantity=-abs(qty),
            unit_price=price,
            total_amount=mul(abs(qty), price),
            fee=fee,
            trade_date=trade_date,
        )

    @property
    def scope(self) -> tuple[str, str]:
        return (self.account_id, self.symbol_id)

    @property
    def opens_lot(self) -> bool:
        return self.kind == TransactionKind.BUY or (self.kind == TransactionKind.DIVIDEND and self.quantity > 0)

    @property
    def cost_total(self) -> Decimal:
        return add(self.total_amount, self.fee)


# --- Inventory ---


@dataclass(frozen=True, kw_only=True)
class Lot:
    id: str
    account_id: str
    symbol_id: str
    origin_transaction_id: Optional[int]
    origin_corporate_action_id: Optional[int] = None
    parent_lot_id: Optional[str] = None
    acquisition_date: dt.date
    # Moves earlier than acquisition_date only when a wash sale carries a holding period over.
    holding_period_start: dt.date
    original_quantity: Decimal
    remaining_quantity: Decimal
    unit_cost_basis: Decimal
    sequence: int

    @property
    def is_closed(self) -> bool:
        return self.remaining_quantity == 0

    @property
    def status(self) -> LotStatus:
        if self.remaining_quantity == 0:
            return LotStatus.CLOSED
        if self.remaining_quantity < self.original_quantity:
            return LotStatus.PARTIALLY_CONSUMED
        return LotStatus.OPEN

    @property
    def total_basis(self) -> Decimal:
        return mul(self.remaining_quantity, self.unit_cost_basis)


@dataclass(frozen=True)
class LotMatch:
    """One FIFO fragment: `quantity` shares taken from `lot_id` at the lot's basis at that moment."""

    lot_id: str
    symbol_id: str
    quantity: Decimal
    unit_cost_basis: Decimal
    acquisition_date: dt.date
    holding_period_start: dt.date


@dataclass(frozen=True, kw_only=True)
class Adjustment:
    id: str
    affected_lot_id: str
    source: AdjustmentSource
    corporate_action_id: Optional[int] = None
    wash_sale_transaction_id: Optional[int] = None
    old_quantity: Decimal
    old_basis: Decimal
    new_quantity: Decimal
    new_basis: Decimal
    applied_at: dt.date
    note: str = ""


@dataclass(frozen=True, kw_only=True)
class RealizedGain:
    id: str
    account_id: str
    symbol_id: str
    sale_transaction_id: Optional[int]
    corporate_action_id: Optional[int] = None
    lot_id: str
    sale_date: dt.date
    holding_period_start: dt.date
    quantity_matched: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain_or_loss: Decimal
    holding_period: HoldingPeriod
    disallowed_loss: Decimal = ZERO

    @property
    def tax_year(self) -> int:
        return self.sale_date.year

    @property
    def recognized_gain_or_loss(self) -> Decimal:
        return add(self.gain_or_loss, self.disallowed_loss)

    @property
    def is_loss(self) -> bool:
        return self.gain_or_loss < 0


@dataclass(frozen=True, kw_only=True)
class WashSaleViolation:
    id: str
    account_id: str
    loss_transaction_id: int
    loss_gain_id: str
    replacement_transaction_id: int
    adjusted_replacement_lot_id: str
    replacement_shares: Decimal
    disallowed_loss: Decimal
    sale_date: dt.date
    replacement_date: dt.date
    holding_period: HoldingPeriod

    @property
    def tax_year(self) -> int:
        return self.sale_date.year


@dataclass(frozen=True, kw_only=True)
class DividendIncome:
    id: str
    account_id: str
    symbol_id: str
    corporate_action_id: int
    lot_id: str
    pay_date: dt.date
    shares_eligible: Decimal
    cash_per_share: Decimal
    amount: Decimal
    classification: DividendClass


@dataclass(frozen=True, kw_only=True)
class UnrealizedGain:
    lot_id: str
    symbol_id: str
    quantity: Decimal
    cost_basis: Decimal
    market_value: Decimal
    gain_or_loss: Decimal
    holding_period: HoldingPeriod


# --- Corporate actions (tagged union; one subclass per kind) ---


@dataclass(frozen=True, kw_only=True)
class CorporateAction:
    kind: ClassVar[ActionKind]
    _decimal_fields: ClassVar[tuple[str, ...]] = ()
    _optional_decimal_fields: ClassVar[tuple[str, ...]] = ()

    symbol_id: str
    ex_date: dt.date
    description: str = ""
    id: Optional[int] = None

    def __post_init__(self) -> None:
        _coerce(self, *self._decimal_fields)
        _coerce(self, *self._optional_decimal_fields, optional=True)

    @property
    def idempotency_key(self) -> tuple[str, dt.date, str]:
        return (self.symbol_id, self.ex_date, self.kind.value)

    def related_symbols(self) -> set[str]:
        return {self.symbol_id}

    def params(self) -> dict[str, Any]:
        names = [f.name for f in dataclasses.fields(self) if f.name not in ("symbol_id", "ex_date", "description", "id")]
        return {n: getattr(self, n) for n in names}

    def with_id(self, action_id: int) -> "CorporateAction":
        return dataclasses.replace(self, id=action_id)

    def validate(self) -> None:
        if not (self.symbol_id or "").strip():
            raise ValidationError("corporate action symbol_id is required")


def _require_positive(action: CorporateAction, name: str) -> None:
    v = getattr(action, name)
    if v is None or v <= 0:
        raise ValidationError(f"{action.kind.value}: {name} must be positive, got {v}", field=name)


def _require_non_negative(action: CorporateAction, name: str) -> None:
    v = getattr(action, name)
    if v is None or v < 0:
        raise ValidationError(f"{action.kind.value}: {name} must be >= 0, got {v}", field=name)


@dataclass(frozen=True, kw_only=True)
class Split(CorporateAction):
    kind: ClassVar[ActionKind] = ActionKind.SPLIT
    _decimal_fields: ClassVar[tuple[str, ...]] = ("ratio_from", "ratio_to")

    ratio_from: Decimal
    ratio_to: Decimal

    def validate(self) -> None:
        super().validate()
        _require_positive(self, "ratio_from")
        _require_positive(self, "ratio_to")


@dataclass(frozen=True, kw_only=True)
class CashDividend(CorporateAction):
    kind: ClassVar[ActionKind] = ActionKind.CASH_DIVIDEND
    _decimal_fields: ClassVar[tuple[str, ...]] = ("cash_per_share",)

    cash_per_share: Decimal
    qualified: bool = False

    def validate(self) -> None:
        super().validate()
        _require_positive(self, "cash_per_share")


@dataclass(frozen=True, kw_only=True)
class StockDividend(CorporateAction):
    kind: ClassVar[ActionKind] = ActionKind.STOCK_DIVIDEND
    _decimal_fields: ClassVar[tuple[str, ...]] = ("shares_per_share",)

    shares_per_share: Decimal

    def validate(self) -> None:
        super().validate()
        _require_positive(self, "shares_per_share")


@dataclass(frozen=True, kw_only=True)
class ReturnOfCapital(CorporateAction):
    kind: ClassVar[ActionKind] = ActionKind.RETURN_OF_CAPITAL
    _decimal_fields: ClassVar[tuple[str, ...]] = ("cash_per_share",)

    cash_per_share: Decimal

    def validate(self) -> None:
        super().validate()
        _require_positive(self, "cash_per_share")


@dataclass(frozen=True, kw_only=True)
class Merger(CorporateAction):
    """
    Stock-for-stock (exchange_ratio only), cash-out (cash_per_share only) or mixed.

    For mixed consideration the share of each lot closed for cash is `cash_fraction`
    when given, else derived from `new_symbol_price`; one of the two is required.
    """

    kind: ClassVar[ActionKind] = ActionKind.MERGER
    _optional_decimal_fields: ClassVar[tuple[str, ...]] = (
        "exchange_ratio",
        "cash_per_share",
        "new_symbol_price",
        "cash_fraction",
    )

    exchange_ratio: Optional[Decimal] = None
    cash_per_share: Optional[Decimal] = None
    new_symbol_id: Optional[str] = None
    new_symbol_price: Optional[Decimal] = None
    cash_fraction: Optional[Decimal] = None

    @property
    def target_symbol_id(self) -> str:
        return (self.new_symbol_id or "").strip() or self.symbol_id

    def related_symbols(self) -> set[str]:
        return {self.symbol_id, self.target_symbol_id}

    def validate(self) -> None:
        super().validate()
        if self.exchange_ratio is None and self.cash_per_share is None:
            raise ValidationError("MERGER: exchange_ratio or cash_per_share is required")
        if self.exchange_ratio is not None:
            _require_positive(self, "exchange_ratio")
        if self.cash_per_share is not None:
            _require_non_negative(self, "cash_per_share")
        if self.new_symbol_price is not None:
            _require_positive(self, "new_symbol_price")
        if self.cash_fraction is not None and not (ZERO <= self.cash_fraction <= ONE):
            raise ValidationError(f"MERGER: cash_fraction must be within [0, 1], got {self.cash_fraction}")
        if self.is_mixed and self.cash_fraction is None and self.new_symbol_price is None:
            raise ValidationError("MERGER: mixed consideration needs new_symbol_price or cash_fraction")

    @property
    def is_mixed(self) -> bool:
        return self.exchange_ratio is not None and self.cash_per_share is not None and self.cash_per_share > 0


@dataclass(frozen=True, kw_only=True)
class SpinOff(CorporateAction):
    kind: ClassVar[ActionKind] = ActionKind.SPINOFF
    _decimal_fields: ClassVar[tuple[str, ...]] = ("distribution_ratio", "basis_allocation")

    new_symbol_id: str
    distribution_ratio: Decimal
    basis_allocation: Decimal

    def related_symbols(self) -> set[str]:
        return {self.symbol_id, self.new_symbol_id}

    def validate(self) -> None:
        super().validate()
        if not (self.new_symbol_id or "").strip():
            raise ValidationError("SPINOFF: new_symbol_id is required")
        if self.new_symbol_id == self.symbol_id:
            raise ValidationError("SPINOFF: new_symbol_id must differ from symbol_id")
        _require_positive(self, "distribution_ratio")
        if not (ZERO <= self.basis_allocation <= ONE):
            raise ValidationError(f"SPINOFF: basis_allocation must be within [0, 1], got {self.basis_allocation}")


ACTION_TYPES: dict[ActionKind, type[CorporateAction]] = {
    cls.kind: cls for cls in (Split, CashDividend, StockDividend, ReturnOfCapital, Merger, SpinOff)
}


def action_from_params(kind: ActionKind | str, **fields: Any) -> CorporateAction:
    try:
        cls = ACTION_TYPES[ActionKind(kind)]
    except ValueError:
        raise ValidationError(f"unknown corporate action kind {kind!r}") from None
    allowed = {f.name for f in dataclasses.fields(cls)}
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"{cls.kind.value}: unexpected fields {sorted(unknown)}")
    try:
        return cls(**fields)
    except TypeError as e:
        raise ValidationError(f"{cls.kind.value}: {e}") from None


@dataclass(frozen=True)
class InventoryState:
    """Everything derived for one (account, symbol) scope by a rebuild."""

    account_id: str
    symbol_id: str
    lots: tuple[Lot, ...] = ()
    adjustments: tuple[Adjustment, ...] = ()
    realized_gains: tuple[RealizedGain, ...] = ()
    wash_sales: tuple[WashSaleViolation, ...] = ()
    dividends: tuple[DividendIncome, ...] = ()
    warnings: tuple[str, ...] = field(default=())

    def open_lots(self) -> tuple[Lot, ...]:
        live = [l for l in self.lots if l.remaining_quantity > 0]
        return tuple(sorted(live, key=lambda l: (l.acquisition_date, l.sequence)))
