from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

HoldingCode = Literal["ST", "LT"]


class TaxReportRow(BaseModel):
    tax_year: int
    holding_period: HoldingCode
    dispositions: int = 0
    proceeds: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    gain_or_loss: Decimal = Decimal("0")
    disallowed_loss: Decimal = Decimal("0")
    wash_sales: int = 0
    # gain_or_loss with wash-sale disallowed amounts added back.
    net_gain_or_loss: Decimal = Decimal("0")


class DividendSummary(BaseModel):
    tax_year: int
    dividend_income: Decimal = Decimal("0")
    qualified_dividends: Decimal = Decimal("0")
    ordinary_dividends: Decimal = Decimal("0")
    # Estimate at the configured qualified/ordinary rates.
    estimated_withholding: Decimal = Decimal("0")


class TaxReport(BaseModel):
    account_id: str
    tax_year: int
    rows: list[TaxReportRow]
    short_term_net: Decimal = Decimal("0")
    long_term_net: Decimal = Decimal("0")
    total_disallowed_loss: Decimal = Decimal("0")
    dividends: DividendSummary
    warnings: list[str] = Field(default_factory=list)

    def as_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class LotView(BaseModel):
    lot_id: str
    symbol_id: str
    acquisition_date: str
    holding_period_start: str
    quantity: Decimal
    unit_cost_basis: Decimal
    total_basis: Decimal
    status: str
    origin_transaction_id: int | None = None
    origin_corporate_action_id: int | None = None
    parent_lot_id: str | None = None
