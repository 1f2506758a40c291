"""Engine configuration.

``EngineCFG`` holds every tunable that affects computed numbers or hashes.
Values that are load-bearing for hash-chain compatibility (``genesis_hash``,
``percentage_places``) must be identical across all deployments that share a
chain.

Configuration is read from, in increasing priority:
    1. Field defaults
    2. A ``.env`` file (``CAPTABLE_*`` keys)
    3. Process environment variables (``CAPTABLE_*``)

Example:
    cfg = load_config()
    cfg.max_dilution_iterations   # 100 unless overridden

    # .env
    CAPTABLE_MAX_DILUTION_ITERATIONS=250
"""

import os
from decimal import Decimal, getcontext, localcontext
from pathlib import Path
from typing import Dict, Optional, Union

from dotenv import dotenv_values
from pydantic import Field, field_validator

from .schemas.base import DomainModel

ENV_PREFIX = "CAPTABLE_"

GENESIS_HASH = "0" * 64


class EngineCFG(DomainModel):
    """Tunables for aggregation, dilution, and integrity computations."""

    percentage_places: int = Field(
        default=6,
        ge=0,
        le=12,
        description="Decimal places for ownership/voting percentages"
    )

    decimal_precision: int = Field(
        default=50,
        ge=28,
        description="Significant digits of the decimal context used for all math"
    )

    max_dilution_iterations: int = Field(
        default=100,
        ge=1,
        description="Bound on the conversion-price fixed-point loop"
    )

    convergence_tolerance: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="Fixed point stops once the fully diluted total moves by less than this"
    )

    share_quantum: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="As-converted and vested share counts are truncated to this unit"
    )

    genesis_hash: str = Field(
        default=GENESIS_HASH,
        description="previous_hash of the first snapshot / audit entry in a chain"
    )

    interest_day_count: int = Field(
        default=365,
        gt=0,
        description="Day-count denominator for convertible interest accrual"
    )

    default_history_limit: int = Field(default=20, ge=1)
    max_history_limit: int = Field(default=100, ge=1)

    default_exercise_window_days: int = Field(
        default=90,
        ge=1,
        le=365,
        description="Post-termination exercise window when a plan does not set one"
    )

    def decimal_context(self):
        """Context manager applying ``decimal_precision`` to the enclosed math."""
        ctx = getcontext().copy()
        ctx.prec = self.decimal_precision
        return localcontext(ctx)

    @field_validator("genesis_hash")
    @classmethod
    def validate_genesis_hash(cls, v: str) -> str:
        """Genesis sentinel must look like a SHA-256 hex digest."""
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("genesis_hash must be 64 lowercase hex characters")
        return v


def _collect_overrides(values: Dict[str, Optional[str]]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for key, value in values.items():
        if value is None or not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX):].lower()
        if field_name in EngineCFG.model_fields:
            overrides[field_name] = value
    return overrides


def load_config(env_file: Optional[Union[str, Path]] = None) -> EngineCFG:
    """Build an ``EngineCFG`` from defaults, an optional .env file, and the environment.

    Args:
        env_file: Path to a .env file. Missing files are ignored.

    Returns:
        Validated EngineCFG

    Raises:
        pydantic.ValidationError: If an override has an invalid value
    """
    overrides: Dict[str, str] = {}
    if env_file is not None and Path(env_file).exists():
        overrides.update(_collect_overrides(dotenv_values(env_file)))
    overrides.update(_collect_overrides(dict(os.environ)))
    return EngineCFG.model_validate(overrides)
