from __future__ import annotations

import os
from decimal import ROUND_HALF_EVEN, Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from src.core.decimal_math import CURRENCY_SCALE, QUANTITY_SCALE

_ROUNDING_MODES = {
    "ROUND_HALF_EVEN",
    "ROUND_HALF_UP",
    "ROUND_HALF_DOWN",
    "ROUND_UP",
    "ROUND_DOWN",
    "ROUND_CEILING",
    "ROUND_FLOOR",
    "ROUND_05UP",
}


class EngineConfig(BaseModel):
    quantity_scale: int = Field(default=QUANTITY_SCALE, ge=0, le=18, description="Fractional digits for reported quantities")
    currency_scale: int = Field(default=CURRENCY_SCALE, ge=0, le=8, description="Fractional digits for reported money")
    rounding: str = Field(default=ROUND_HALF_EVEN, description="decimal rounding mode name")
    basis_epsilon: Decimal = Field(default=Decimal("0.01"), ge=0, description="Tolerance for conservation checks")
    quantity_epsilon: Decimal = Field(default=Decimal("0.00000001"), ge=0)
    long_term_days: int = Field(default=365, ge=1, description="Held strictly longer than this => long-term")
    wash_sale_window_days: int = Field(default=30, ge=0)
    # Pub. 550 reading moves the loss lot's holding period onto the replacement lot.
    wash_sale_carry_holding_period: bool = False
    wash_sale_include_reinvestments: bool = False
    qualified_dividend_min_days: int = Field(default=60, ge=0)
    qualified_dividend_withholding_rate: Decimal = Field(default=Decimal("0.15"), ge=0, le=1)
    ordinary_dividend_withholding_rate: Decimal = Field(default=Decimal("0.24"), ge=0, le=1)
    harvest_loss_threshold: Decimal = Field(default=Decimal("100"), ge=0, description="Minimum unrealized loss worth harvesting")

    @field_validator("rounding")
    @classmethod
    def _rounding(cls, v: str) -> str:
        vv = (v or "").strip().upper()
        if vv not in _ROUNDING_MODES:
            raise ValueError(f"unknown rounding mode {v!r}")
        return vv


_ENV_PREFIX = "COSTBASIS_"


def _candidate_paths() -> list[Path]:
    paths = [Path("costbasis.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".costbasis" / "costbasis.yaml")
    return paths


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in EngineConfig.model_fields:
        raw = os.environ.get(_ENV_PREFIX + name.upper())
        if raw is None or not raw.strip():
            continue
        out[name] = raw.strip()
    return out


def load_engine_config(path: Optional[Path] = None) -> tuple[EngineConfig, Optional[str]]:
    """
    Load engine config from YAML (if present), then apply COSTBASIS_* env overrides.

    Search paths (first match wins) when `path` is not given:
      - ./costbasis.yaml
      - ~/.costbasis/costbasis.yaml
    """
    data: dict[str, Any] = {}
    source: Optional[str] = None
    for p in [path] if path is not None else _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            source = str(p)
            break
    data.update(_env_overrides())
    return EngineConfig.model_validate(data), source
