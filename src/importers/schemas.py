from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, field_validator

from src.core.records import CorporateAction, Transaction, TransactionKind, action_from_params


def _none_if_blank(v):
    if v is None:
        return None
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


def _strip_number(v):
    v = _none_if_blank(v)
    if isinstance(v, str):
        return v.strip().replace(",", "").replace("$", "")
    return v


class TransactionRow(BaseModel):
    account: str
    symbol: str
    date: dt.date
    type: Literal["BUY", "SELL", "DIVIDEND", "FEE", "SPLIT_ADJUSTMENT", "MERGER_ADJUSTMENT"]
    # Share count; SELL rows may give it signed or unsigned.
    qty: Decimal = Decimal("0")
    price: Decimal = Decimal("0")
    amount: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    corporate_action_id: Optional[int] = None

    @field_validator("symbol", "type", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("account")
    @classmethod
    def _account(cls, v: str) -> str:
        vv = v.strip()
        if not vv:
            raise ValueError("account is blank")
        return vv

    @field_validator("qty", "price", "fee", mode="before")
    @classmethod
    def _numbers_blank_to_zero(cls, v):
        v = _strip_number(v)
        return "0" if v is None else v

    @field_validator("amount", "corporate_action_id", mode="before")
    @classmethod
    def _optional_blank_to_none(cls, v):
        return _strip_number(v)

    def to_transaction(self) -> Transaction:
        kind = TransactionKind(self.type)
        qty = -abs(self.qty) if kind == TransactionKind.SELL else self.qty
        total = self.amount if self.amount is not None else abs(self.qty) * self.price
        return Transaction(
            account_id=self.account,
            symbol_id=self.symbol,
            kind=kind,
            quantity=qty,
            unit_price=self.price,
            total_amount=abs(total),
            fee=self.fee,
            trade_date=self.date,
            corporate_action_id=self.corporate_action_id,
        )


_ACTION_FIELDS: dict[str, tuple[str, ...]] = {
    "SPLIT": ("ratio_from", "ratio_to"),
    "CASH_DIVIDEND": ("cash_per_share", "qualified"),
    "STOCK_DIVIDEND": ("shares_per_share",),
    "RETURN_OF_CAPITAL": ("cash_per_share",),
    "MERGER": ("exchange_ratio", "cash_per_share", "new_symbol_id", "new_symbol_price", "cash_fraction"),
    "SPINOFF": ("new_symbol_id", "distribution_ratio", "basis_allocation"),
}


class CorporateActionRow(BaseModel):
    symbol: str
    ex_date: dt.date
    kind: Literal["SPLIT", "CASH_DIVIDEND", "STOCK_DIVIDEND", "RETURN_OF_CAPITAL", "MERGER", "SPINOFF"]
    ratio_from: Optional[Decimal] = None
    ratio_to: Optional[Decimal] = None
    cash_per_share: Optional[Decimal] = None
    shares_per_share: Optional[Decimal] = None
    exchange_ratio: Optional[Decimal] = None
    new_symbol: Optional[str] = None
    new_symbol_price: Optional[Decimal] = None
    cash_fraction: Optional[Decimal] = None
    distribution_ratio: Optional[Decimal] = None
    basis_allocation: Optional[Decimal] = None
    qualified: bool = False
    description: str = ""

    @field_validator("symbol", "kind", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("new_symbol", mode="before")
    @classmethod
    def _new_symbol(cls, v):
        v = _none_if_blank(v)
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator(
        "ratio_from",
        "ratio_to",
        "cash_per_share",
        "shares_per_share",
        "exchange_ratio",
        "new_symbol_price",
        "cash_fraction",
        "distribution_ratio",
        "basis_allocation",
        mode="before",
    )
    @classmethod
    def _optional_numbers_blank_to_none(cls, v):
        return _strip_number(v)

    @field_validator("qualified", mode="before")
    @classmethod
    def _qualified(cls, v):
        v = _none_if_blank(v)
        return False if v is None else v

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return _none_if_blank(v) or ""

    def to_action(self) -> CorporateAction:
        values = self.model_dump()
        values["new_symbol_id"] = values.pop("new_symbol")
        params = {k: values[k] for k in _ACTION_FIELDS[self.kind] if values.get(k) is not None}
        return action_from_params(
            self.kind,
            symbol_id=self.symbol,
            ex_date=self.ex_date,
            description=self.description,
            **params,
        )


class SecurityRow(BaseModel):
    symbol: str
    name: Optional[str] = None
    substitute_group: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("name", "substitute_group", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(v)
