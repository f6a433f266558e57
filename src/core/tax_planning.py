from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from src.core.capital_gains import LONG_TERM_DAYS, unrealized_gains
from src.core.decimal_math import ZERO, sub, total
from src.core.records import HoldingPeriod, Lot, Transaction, TransactionKind
from src.core.symbols import SymbolIdentity, substantially_identical

log = logging.getLogger(__name__)

RISK_DEFINITE = "DEFINITE"
RISK_POSSIBLE = "POSSIBLE"
RISK_NONE = "NONE"


@dataclass(frozen=True)
class WashMatch:
    kind: str  # EXECUTED_BUY or PROPOSED_BUY
    date: dt.date
    symbol_id: str
    transaction_id: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class ProposedBuy:
    symbol_id: str
    date: dt.date


@dataclass(frozen=True)
class WashSaleRisk:
    account_id: str
    symbol_id: str
    sale_date: dt.date
    level: str
    matches: tuple[WashMatch, ...] = ()
    # First date a loss sale is clear of executed buys; repurchase is clear after safe_repurchase_date.
    safe_sale_date: Optional[dt.date] = None
    safe_repurchase_date: Optional[dt.date] = None

    @property
    def at_risk(self) -> bool:
        return self.level != RISK_NONE


@dataclass(frozen=True)
class HarvestCandidate:
    account_id: str
    symbol_id: str
    price: Decimal
    quantity: Decimal
    cost_basis: Decimal
    market_value: Decimal
    unrealized_loss: Decimal  # positive
    short_term: Decimal
    long_term: Decimal
    lot_ids: tuple[str, ...] = ()
    wash_risk: str = RISK_NONE
    safe_sale_date: Optional[dt.date] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def harvestable(self) -> bool:
        return self.wash_risk == RISK_NONE


def wash_risk_for_loss_sale(
    transactions: Iterable[Transaction],
    *,
    identity: SymbolIdentity,
    account_id: str,
    symbol_id: str,
    sale_date: dt.date,
    proposed_buys: Iterable[ProposedBuy] = (),
    window_days: int = 30,
    include_reinvestments: bool = False,
) -> WashSaleRisk:
    """
    Would a loss sale of `symbol_id` on `sale_date` be a wash sale?

    DEFINITE when an executed or proposed buy of a substantially identical
    symbol falls inside the window around the sale; POSSIBLE when a buy in the
    window involves a symbol the identity oracle does not know; NONE otherwise.
    """
    window = dt.timedelta(days=window_days)
    start, end = sale_date - window, sale_date + window
    buy_kinds = {TransactionKind.BUY}
    if include_reinvestments:
        buy_kinds.add(TransactionKind.DIVIDEND)

    matches: list[WashMatch] = []
    possible = False
    last_buy: Optional[dt.date] = None
    for t in transactions:
        if t.account_id != account_id or t.kind not in buy_kinds or t.quantity <= 0:
            continue
        if not (start <= t.trade_date <= end):
            continue
        ident, reason = substantially_identical(identity, symbol_a=symbol_id, symbol_b=t.symbol_id)
        if reason == "unknown_security":
            possible = True
        if not ident:
            continue
        matches.append(WashMatch(kind="EXECUTED_BUY", date=t.trade_date, symbol_id=t.symbol_id, transaction_id=t.id, reason=reason))
        if t.trade_date <= sale_date and (last_buy is None or t.trade_date > last_buy):
            last_buy = t.trade_date

    for pb in proposed_buys:
        if not (start <= pb.date <= end):
            continue
        ident, reason = substantially_identical(identity, symbol_a=symbol_id, symbol_b=pb.symbol_id)
        if reason == "unknown_security":
            possible = True
        if ident:
            matches.append(WashMatch(kind="PROPOSED_BUY", date=pb.date, symbol_id=pb.symbol_id, reason=reason))

    if matches:
        level = RISK_DEFINITE
    elif possible:
        level = RISK_POSSIBLE
    else:
        level = RISK_NONE
    safe_sale = sale_date if last_buy is None else max(sale_date, last_buy + window + dt.timedelta(days=1))
    res = WashSaleRisk(
        account_id=account_id,
        symbol_id=symbol_id,
        sale_date=sale_date,
        level=level,
        matches=tuple(sorted(matches, key=lambda m: (m.date, m.kind, m.symbol_id))),
        safe_sale_date=safe_sale,
        safe_repurchase_date=end + dt.timedelta(days=1),
    )
    log.debug("Wash risk %s %s on %s: %s (%s matches)", account_id, symbol_id, sale_date, level, len(matches))
    return res


def harvest_candidates(
    lots: Iterable[Lot],
    transactions: Iterable[Transaction],
    *,
    identity: SymbolIdentity,
    account_id: str,
    prices: Mapping[str, Decimal],
    as_of: dt.date,
    threshold: Decimal,
    window_days: int = 30,
    long_term_days: int = LONG_TERM_DAYS,
    include_reinvestments: bool = False,
) -> list[HarvestCandidate]:
    """
    Positions whose sale at `prices` would realize a net loss larger than `threshold`.

    Selling a position realizes every open lot of it, so gains on some lots
    offset losses on others. Largest loss first.
    """
    txns = list(transactions)
    by_symbol: dict[str, list[Lot]] = {}
    for lot in lots:
        if lot.account_id == account_id and lot.remaining_quantity > 0:
            by_symbol.setdefault(lot.symbol_id, []).append(lot)

    out: list[HarvestCandidate] = []
    for symbol_id in sorted(by_symbol):
        price = prices.get(symbol_id)
        if price is None:
            log.debug("No price for %s; skipped in harvest scan", symbol_id)
            continue
        rows = unrealized_gains(by_symbol[symbol_id], price=price, as_of=as_of, long_term_days=long_term_days)
        net = total(r.gain_or_loss for r in rows)
        if net >= 0 or -net <= threshold:
            continue
        st = total(r.gain_or_loss for r in rows if r.holding_period == HoldingPeriod.SHORT_TERM)
        lt = total(r.gain_or_loss for r in rows if r.holding_period == HoldingPeriod.LONG_TERM)
        risk = wash_risk_for_loss_sale(
            txns,
            identity=identity,
            account_id=account_id,
            symbol_id=symbol_id,
            sale_date=as_of,
            window_days=window_days,
            include_reinvestments=include_reinvestments,
        )
        warnings = []
        if risk.at_risk:
            warnings.append(f"{symbol_id}: wash-sale risk {risk.level}; loss sale is clear from {risk.safe_sale_date}")
        basis = total(r.cost_basis for r in rows)
        out.append(
            HarvestCandidate(
                account_id=account_id,
                symbol_id=symbol_id,
                price=price,
                quantity=total(r.quantity for r in rows),
                cost_basis=basis,
                market_value=total(r.market_value for r in rows),
                unrealized_loss=sub(ZERO, net),
                short_term=st,
                long_term=lt,
                lot_ids=tuple(r.lot_id for r in rows if r.gain_or_loss < 0),
                wash_risk=risk.level,
                safe_sale_date=risk.safe_sale_date,
                warnings=warnings,
            )
        )
    out.sort(key=lambda c: (-c.unrealized_loss, c.symbol_id))
    return out
