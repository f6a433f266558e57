from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Date, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.db.types import DecimalText, UTCDateTime
from src.utils.time import utcnow


class Base(DeclarativeBase):
    pass


TxnKind = Enum(
    "BUY",
    "SELL",
    "DIVIDEND",
    "FEE",
    "SPLIT_ADJUSTMENT",
    "MERGER_ADJUSTMENT",
    name="txn_kind",
)
ActionKindType = Enum(
    "SPLIT",
    "CASH_DIVIDEND",
    "STOCK_DIVIDEND",
    "RETURN_OF_CAPITAL",
    "MERGER",
    "SPINOFF",
    name="corporate_action_kind",
)
AdjustmentSourceType = Enum(
    "SPLIT",
    "STOCK_DIVIDEND",
    "RETURN_OF_CAPITAL",
    "MERGER",
    "SPINOFF",
    "WASH_SALE",
    name="adjustment_source",
)
LotStatusType = Enum("OPEN", "PARTIALLY_CONSUMED", "CLOSED", name="lot_status")
TermType = Enum("ST", "LT", name="holding_term")
DividendClassType = Enum("QUALIFIED", "ORDINARY", name="dividend_class")


class Security(Base):
    __tablename__ = "securities"

    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    substitute_group: Mapped[Optional[str]] = mapped_column(String(100), index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)


class CorporateActionRecord(Base):
    __tablename__ = "corporate_actions"
    __table_args__ = (UniqueConstraint("symbol_id", "ex_date", "kind", name="uq_corporate_action_key"),)

    # Ids are assigned by the engine, not the database.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(ActionKindType, nullable=False)
    ex_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    params_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class TransactionRecord(Base):
    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_scope", "account_id", "symbol_id", "trade_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(TxnKind, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    fee: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    trade_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    corporate_action_id: Mapped[Optional[int]] = mapped_column(ForeignKey("corporate_actions.id"))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    corporate_action: Mapped[Optional["CorporateActionRecord"]] = relationship()


class TaxLotRecord(Base):
    __tablename__ = "tax_lots"
    __table_args__ = (Index("ix_tax_lots_scope", "account_id", "symbol_id"),)

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    origin_corporate_action_id: Mapped[Optional[int]] = mapped_column(ForeignKey("corporate_actions.id"))
    parent_lot_id: Mapped[Optional[str]] = mapped_column(String(200))
    acquisition_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    holding_period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    original_quantity: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    unit_cost_basis: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    status: Mapped[str] = mapped_column(LotStatusType, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)


class LotAdjustmentRecord(Base):
    __tablename__ = "lot_adjustments"
    __table_args__ = (Index("ix_lot_adjustments_lot", "affected_lot_id"),)

    id: Mapped[str] = mapped_column(String(220), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    affected_lot_id: Mapped[str] = mapped_column(ForeignKey("tax_lots.id"), nullable=False)
    source: Mapped[str] = mapped_column(AdjustmentSourceType, nullable=False)
    corporate_action_id: Mapped[Optional[int]] = mapped_column(ForeignKey("corporate_actions.id"))
    wash_sale_transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    old_quantity: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    old_basis: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    new_basis: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    applied_at: Mapped[dt.date] = mapped_column(Date, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")


class RealizedGainRecord(Base):
    __tablename__ = "realized_gains"
    __table_args__ = (Index("ix_realized_gains_year", "account_id", "tax_year"),)

    id: Mapped[str] = mapped_column(String(220), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    sale_transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    corporate_action_id: Mapped[Optional[int]] = mapped_column(ForeignKey("corporate_actions.id"))
    lot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    sale_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    holding_period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_matched: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    proceeds: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    gain_or_loss: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    disallowed_loss: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    holding_period: Mapped[str] = mapped_column(TermType, nullable=False)


class WashSaleViolationRecord(Base):
    __tablename__ = "wash_sale_violations"
    __table_args__ = (Index("ix_wash_sale_violations_loss", "loss_transaction_id"),)

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    loss_transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    loss_gain_id: Mapped[str] = mapped_column(String(220), nullable=False)
    replacement_transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False)
    adjusted_replacement_lot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    replacement_shares: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    disallowed_loss: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    sale_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    replacement_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    holding_period: Mapped[str] = mapped_column(TermType, nullable=False)


class DividendIncomeRecord(Base):
    __tablename__ = "dividend_income"
    __table_args__ = (Index("ix_dividend_income_scope", "account_id", "symbol_id"),)

    id: Mapped[str] = mapped_column(String(220), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol_id: Mapped[str] = mapped_column(String(32), nullable=False)
    corporate_action_id: Mapped[int] = mapped_column(ForeignKey("corporate_actions.id"), nullable=False)
    lot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    pay_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    shares_eligible: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    cash_per_share: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalText(), nullable=False)
    classification: Mapped[str] = mapped_column(DividendClassType, nullable=False)
