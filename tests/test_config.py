from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.core.config import EngineConfig, load_engine_config


def test_defaults():
    cfg = EngineConfig()
    assert cfg.long_term_days == 365
    assert cfg.wash_sale_window_days == 30
    assert cfg.basis_epsilon == Decimal("0.01")
    assert cfg.rounding == "ROUND_HALF_EVEN"
    assert cfg.wash_sale_carry_holding_period is False


def test_yaml_then_env_override(tmp_path, monkeypatch):
    p = tmp_path / "costbasis.yaml"
    p.write_text("wash_sale_window_days: 31\nbasis_epsilon: '0.001'\nrounding: round_half_up\n")
    monkeypatch.setenv("COSTBASIS_WASH_SALE_WINDOW_DAYS", "45")
    cfg, source = load_engine_config(p)
    assert source == str(p)
    assert cfg.wash_sale_window_days == 45
    assert cfg.basis_epsilon == Decimal("0.001")
    assert cfg.rounding == "ROUND_HALF_UP"


def test_missing_file_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    cfg, source = load_engine_config()
    assert source is None
    assert cfg == EngineConfig()


def test_bad_rounding_mode_rejected():
    with pytest.raises(ValidationError):
        EngineConfig(rounding="ROUND_SOMETIMES")
