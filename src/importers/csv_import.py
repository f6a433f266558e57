from __future__ import annotations

import csv
import io
import logging
from typing import Any

from pydantic import ValidationError as RowValidationError
from sqlalchemy.orm import Session

from src.core.engine import CostBasisEngine
from src.core.errors import EngineError
from src.core.symbols import SymbolRegistry
from src.db.audit import log_change
from src.db.store import LedgerStore
from src.importers.schemas import CorporateActionRow, SecurityRow, TransactionRow

log = logging.getLogger(__name__)

IMPORT_KINDS = ("securities", "transactions", "corporate_actions")


def _row_error(e: Exception) -> str:
    if isinstance(e, EngineError):
        return f"{e.code}: {e.message}"
    return str(e)


def import_csv(
    session: Session,
    engine: CostBasisEngine,
    *,
    kind: str,
    content: str,
    actor: str,
    note: str = "",
) -> dict[str, Any]:
    """
    Import one CSV file into the ledger.

    Rows are applied one by one through the engine, so a bad row (parse error,
    oversell, duplicate corporate action) is reported and skipped while the
    rest still import. Derived rows are refreshed once at the end.
    """
    kind = kind.strip()
    reader = csv.DictReader(io.StringIO(content))
    rows = list(reader)
    errors: list[str] = []
    imported = 0
    touched_accounts: set[str] = set()
    store = LedgerStore(session, actor=actor)

    if kind == "securities":
        for i, r in enumerate(rows, start=2):
            try:
                row = SecurityRow.model_validate(r)
            except RowValidationError as e:
                errors.append(f"line {i}: {e}")
                continue
            store.upsert_security(row.symbol, name=row.name, substitute_group=row.substitute_group)
            if isinstance(engine.identity, SymbolRegistry):
                engine.identity.add(row.symbol, substitute_group=row.substitute_group)
            imported += 1

    elif kind == "transactions":
        for i, r in enumerate(rows, start=2):
            try:
                txn = TransactionRow.model_validate(r).to_transaction()
            except (RowValidationError, EngineError) as e:
                errors.append(f"line {i}: {_row_error(e)}")
                continue
            res = store.record_transaction(engine, txn, refresh_derived=False)
            if not res.ok:
                errors.append(f"line {i}: {_row_error(res.error)}")
                continue
            touched_accounts.add(res.value.account_id)
            imported += 1

    elif kind == "corporate_actions":
        for i, r in enumerate(rows, start=2):
            try:
                action = CorporateActionRow.model_validate(r).to_action()
            except (RowValidationError, EngineError) as e:
                errors.append(f"line {i}: {_row_error(e)}")
                continue
            res = store.apply_corporate_action(engine, action, refresh_derived=False)
            if not res.ok:
                errors.append(f"line {i}: {_row_error(res.error)}")
                continue
            touched_accounts |= set(engine.accounts())
            imported += 1
    else:
        errors.append(f"Unknown import kind: {kind}")

    derived = store.replace_derived(engine, touched_accounts) if touched_accounts else 0

    if errors:
        log.warning("CSV import %s: %s rows imported, %s errors", kind, imported, len(errors))
        log_change(
            session,
            actor=actor,
            action="IMPORT_ERRORS",
            entity="CSVImport",
            entity_id=kind,
            old=None,
            new={"errors": errors[:50]},
            note=note or f"CSV import {kind} errors",
        )
    else:
        log.info("CSV import %s: %s rows imported", kind, imported)

    return {"kind": kind, "rows": imported, "derived_rows": derived, "errors": errors}
