"""Tests for engine configuration loading."""

import pytest
from decimal import Decimal

from pydantic import ValidationError

from captable_engine.config import EngineCFG, load_config


def test_defaults(monkeypatch):
    monkeypatch.delenv("CAPTABLE_MAX_DILUTION_ITERATIONS", raising=False)
    cfg = load_config()

    assert cfg.percentage_places == 6
    assert cfg.max_dilution_iterations == 100
    assert cfg.convergence_tolerance == Decimal("1")
    assert cfg.genesis_hash == "0" * 64


def test_env_file_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("CAPTABLE_MAX_DILUTION_ITERATIONS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text(
        "CAPTABLE_MAX_DILUTION_ITERATIONS=250\n"
        "CAPTABLE_CONVERGENCE_TOLERANCE=0.5\n"
        "OTHER_SETTING=ignored\n"
    )

    cfg = load_config(env_file)

    assert cfg.max_dilution_iterations == 250
    assert cfg.convergence_tolerance == Decimal("0.5")


def test_environment_beats_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("CAPTABLE_MAX_DILUTION_ITERATIONS=250\n")
    monkeypatch.setenv("CAPTABLE_MAX_DILUTION_ITERATIONS", "42")

    assert load_config(env_file).max_dilution_iterations == 42


def test_missing_env_file_is_ignored(tmp_path):
    assert load_config(tmp_path / "absent.env").percentage_places == 6


def test_invalid_override(monkeypatch):
    monkeypatch.setenv("CAPTABLE_PERCENTAGE_PLACES", "-1")

    with pytest.raises(ValidationError):
        load_config()


def test_genesis_hash_must_be_hex():
    with pytest.raises(ValidationError, match="64 lowercase hex characters"):
        EngineCFG(genesis_hash="X" * 64)


def test_decimal_context_precision():
    cfg = EngineCFG(decimal_precision=40)

    with cfg.decimal_context():
        third = Decimal(1) / Decimal(3)

    assert len(str(third)) == 42
