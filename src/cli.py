from __future__ import annotations

import datetime as dt
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from src.core.errors import EngineError

app = typer.Typer(help="Cost-basis and tax-lot accounting CLI")

log = logging.getLogger(__name__)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo(payload: Any) -> None:
    from src.utils.jsonable import jsonable

    typer.echo(json.dumps(jsonable(payload), indent=2))


def _unwrap(res) -> Any:
    if not res.ok:
        typer.echo(json.dumps(res.error.as_json(), indent=2), err=True)
        raise typer.Exit(code=1)
    return res.value


def _fail(e: Exception) -> None:
    payload = e.as_json() if isinstance(e, EngineError) else {"code": "VALIDATION", "message": str(e)}
    typer.echo(json.dumps(payload, indent=2), err=True)
    raise typer.Exit(code=2)


def _parse_date_opt(value: Optional[str], name: str) -> Optional[dt.date]:
    from src.utils.time import parse_date

    if value is None:
        return None
    d = parse_date(value)
    if d is None:
        raise typer.BadParameter(f"invalid date {value!r}", param_hint=name)
    return d


@contextmanager
def _engine_session(config_path: Optional[Path], actor: str = "cli") -> Iterator[tuple]:
    """Open a session, replay the stored ledger into a fresh engine, and yield (session, store, engine)."""
    load_dotenv()
    from src.core.config import load_engine_config
    from src.db.init_db import init_db
    from src.db.session import get_session
    from src.db.store import LedgerStore

    cfg, source = load_engine_config(config_path)
    if source:
        log.info("Engine config loaded from %s", source)
    init_db()
    with get_session() as session:
        store = LedgerStore(session, actor=actor)
        engine, loaded = store.load_engine(cfg)
        _unwrap(loaded)
        yield session, store, engine


ConfigOpt = typer.Option(None, "--config", exists=True, dir_okay=False, help="costbasis.yaml path")


@app.command("import-csv")
def import_csv_cmd(
    kind: str = typer.Option(..., help="securities|transactions|corporate_actions"),
    path: Path = typer.Option(..., exists=True, dir_okay=False),
    actor: str = typer.Option("cli", help="Audit actor"),
    note: str = typer.Option("", help="Audit note"),
    config: Optional[Path] = ConfigOpt,
):
    from src.importers.csv_import import import_csv

    with _engine_session(config, actor) as (session, _store, engine):
        result = import_csv(session, engine, kind=kind, content=path.read_text(), actor=actor, note=note)
        session.commit()
        _echo(result)


@app.command("record")
def record_cmd(
    account: str = typer.Option(...),
    symbol: str = typer.Option(...),
    txn_type: str = typer.Option(..., "--type", help="BUY|SELL|DIVIDEND|FEE"),
    qty: str = typer.Option("0"),
    price: str = typer.Option("0"),
    fee: str = typer.Option("0"),
    date: str = typer.Option(..., help="Trade date (YYYY-MM-DD)"),
    actor: str = typer.Option("cli", help="Audit actor"),
    config: Optional[Path] = ConfigOpt,
):
    from src.importers.schemas import TransactionRow

    try:
        txn = TransactionRow.model_validate(
            {"account": account, "symbol": symbol, "type": txn_type, "qty": qty, "price": price, "fee": fee, "date": date}
        ).to_transaction()
    except (PydanticValidationError, EngineError) as e:
        _fail(e)
    with _engine_session(config, actor) as (session, store, engine):
        t = _unwrap(store.record_transaction(engine, txn))
        session.commit()
        _echo(t)


@app.command("delete-transaction")
def delete_transaction_cmd(
    transaction_id: int = typer.Option(..., "--id"),
    actor: str = typer.Option("cli", help="Audit actor"),
    config: Optional[Path] = ConfigOpt,
):
    with _engine_session(config, actor) as (session, store, engine):
        t = _unwrap(store.delete_transaction(engine, transaction_id))
        session.commit()
        _echo({"deleted": t})


@app.command("apply-action")
def apply_action_cmd(
    symbol: str = typer.Option(...),
    kind: str = typer.Option(..., help="SPLIT|CASH_DIVIDEND|STOCK_DIVIDEND|RETURN_OF_CAPITAL|MERGER|SPINOFF"),
    ex_date: str = typer.Option(..., "--ex-date"),
    param: Optional[list[str]] = typer.Option(None, "--param", help="name=value, e.g. ratio_to=2 (repeatable)"),
    description: str = typer.Option(""),
    preview: Optional[str] = typer.Option(None, "--preview", help="Show the effect on this account without saving"),
    actor: str = typer.Option("cli", help="Audit actor"),
    config: Optional[Path] = ConfigOpt,
):
    from src.importers.schemas import CorporateActionRow

    fields: dict[str, Any] = {"symbol": symbol, "kind": kind, "ex_date": ex_date, "description": description}
    for p in param or []:
        name, sep, value = p.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected name=value, got {p!r}", param_hint="--param")
        fields[name.strip()] = value.strip()
    try:
        action = CorporateActionRow.model_validate(fields).to_action()
    except (PydanticValidationError, EngineError) as e:
        _fail(e)

    with _engine_session(config, actor) as (session, store, engine):
        if preview:
            _echo(_unwrap(engine.preview_corporate_action(preview, action)))
            return
        a = _unwrap(store.apply_corporate_action(engine, action))
        session.commit()
        _echo(a)


@app.command("rebuild")
def rebuild_cmd(
    account: str = typer.Option(...),
    symbol: str = typer.Option(...),
    actor: str = typer.Option("cli", help="Audit actor"),
    config: Optional[Path] = ConfigOpt,
):
    with _engine_session(config, actor) as (session, store, engine):
        res = _unwrap(store.rebuild(engine, account, symbol.upper()))
        session.commit()
        _echo(res.as_json())


@app.command("open-lots")
def open_lots_cmd(
    account: str = typer.Option(...),
    symbol: str = typer.Option(...),
    config: Optional[Path] = ConfigOpt,
):
    from src.core.tax_report import lot_view

    with _engine_session(config) as (_session, _store, engine):
        lots = _unwrap(engine.open_lots(account, symbol.upper()))
        _echo([lot_view(l, engine.config) for l in lots])


@app.command("realized")
def realized_cmd(
    account: str = typer.Option(...),
    year: Optional[int] = typer.Option(None, help="Tax year filter"),
    config: Optional[Path] = ConfigOpt,
):
    with _engine_session(config) as (_session, _store, engine):
        _echo(_unwrap(engine.realized_gains(account, year)))


@app.command("wash-sales")
def wash_sales_cmd(
    account: str = typer.Option(...),
    year: Optional[int] = typer.Option(None, help="Tax year filter"),
    config: Optional[Path] = ConfigOpt,
):
    with _engine_session(config) as (_session, _store, engine):
        _echo(_unwrap(engine.wash_sales(account, year)))


@app.command("unrealized")
def unrealized_cmd(
    account: str = typer.Option(...),
    symbol: str = typer.Option(...),
    price: str = typer.Option(..., help="Current market price per share"),
    as_of: Optional[str] = typer.Option(None, "--as-of"),
    config: Optional[Path] = ConfigOpt,
):
    on = _parse_date_opt(as_of, "--as-of")
    with _engine_session(config) as (_session, _store, engine):
        _echo(_unwrap(engine.unrealized_gains(account, symbol.upper(), price, on)))


def _pairs(values: Optional[list[str]], hint: str) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    for v in values or []:
        name, sep, value = v.partition("=")
        if not sep or not name.strip() or not value.strip():
            raise typer.BadParameter(f"expected SYMBOL=VALUE, got {v!r}", param_hint=hint)
        out.append((name.strip().upper(), value.strip()))
    return out


@app.command("wash-risk")
def wash_risk_cmd(
    account: str = typer.Option(...),
    symbol: str = typer.Option(..., help="Symbol you plan to sell at a loss"),
    date: Optional[str] = typer.Option(None, help="Planned sale date (default: today)"),
    buy: Optional[list[str]] = typer.Option(None, "--buy", help="Planned purchase SYMBOL=YYYY-MM-DD (repeatable)"),
    config: Optional[Path] = ConfigOpt,
):
    from src.core.tax_planning import ProposedBuy

    on = _parse_date_opt(date, "--date")
    proposed = [ProposedBuy(symbol_id=s, date=_parse_date_opt(d, "--buy")) for s, d in _pairs(buy, "--buy")]
    with _engine_session(config) as (_session, _store, engine):
        _echo(_unwrap(engine.wash_sale_risk(account, symbol.upper(), on, proposed)))


@app.command("harvest")
def harvest_cmd(
    account: str = typer.Option(...),
    price: Optional[list[str]] = typer.Option(None, "--price", help="SYMBOL=PRICE (repeatable)"),
    threshold: Optional[str] = typer.Option(None, help="Minimum loss to report (default from config)"),
    as_of: Optional[str] = typer.Option(None, "--as-of"),
    config: Optional[Path] = ConfigOpt,
):
    on = _parse_date_opt(as_of, "--as-of")
    prices = dict(_pairs(price, "--price"))
    with _engine_session(config) as (_session, _store, engine):
        _echo(_unwrap(engine.harvest_candidates(account, prices, threshold, on)))


@app.command("tax-report")
def tax_report_cmd(
    account: str = typer.Option(...),
    year: int = typer.Option(...),
    fmt: str = typer.Option("json", "--format", help="json|text"),
    config: Optional[Path] = ConfigOpt,
):
    from src.utils.money import format_usd

    with _engine_session(config) as (_session, _store, engine):
        report = _unwrap(engine.tax_report(account, year))
    if fmt != "text":
        _echo(report)
        return
    typer.echo(f"Tax report {report.account_id} {report.tax_year}")
    for r in report.rows:
        typer.echo(
            f"  {r.holding_period}  n={r.dispositions:<4} proceeds={format_usd(r.proceeds)} "
            f"basis={format_usd(r.cost_basis)} gain={format_usd(r.gain_or_loss)} "
            f"disallowed={format_usd(r.disallowed_loss)} net={format_usd(r.net_gain_or_loss)}"
        )
    typer.echo(f"  short-term net: {format_usd(report.short_term_net)}")
    typer.echo(f"  long-term net:  {format_usd(report.long_term_net)}")
    typer.echo(
        f"  dividends: {format_usd(report.dividends.dividend_income)} "
        f"(qualified {format_usd(report.dividends.qualified_dividends)}, "
        f"est. withholding {format_usd(report.dividends.estimated_withholding)})"
    )
    for w in report.warnings:
        typer.echo(f"  warning: {w}")


if __name__ == "__main__":
    app()
