"""Percentage allocation with largest-remainder rounding.

Rounding each share of a total independently can leave the percentages summing
to 99.999999 or 100.000001. Largest-remainder allocation floors every value to
the target precision, then hands the leftover units one at a time to the
entries with the largest discarded remainders. The result sums to exactly 100
whenever the total is positive.

Example (2 places):
    values 1, 1, 1  ->  exact 33.333.. each
    floors          ->  33.33, 33.33, 33.33   (sum 99.99, 1 unit left)
    remainders tie  ->  first key in sort order gets the unit
    result          ->  33.34, 33.33, 33.33
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, Hashable, List, Sequence, Tuple, TypeVar

from .schemas.base import ZERO, HUNDRED

K = TypeVar("K", bound=Hashable)


def quantum_for(places: int) -> Decimal:
    """Smallest representable step at ``places`` decimal places."""
    return Decimal(1).scaleb(-places)


def largest_remainder(
    items: Sequence[Tuple[K, Decimal]],
    places: int = 6,
    target: Decimal = HUNDRED,
) -> Dict[K, Decimal]:
    """Allocate ``target`` across items proportionally to their values.

    Args:
        items: (key, value) pairs; values must be non-negative. Keys must be
            sortable: they break ties between equal remainders.
        places: Decimal places of the result
        target: Amount to allocate (100 for percentages)

    Returns:
        key -> allocated amount, summing to exactly ``target`` when the total
        of values is positive, all zeros otherwise
    """
    total = sum((value for _, value in items), ZERO)
    quantum = quantum_for(places)
    if total <= 0:
        return {key: ZERO.quantize(quantum) for key, _ in items}

    floors: Dict[K, Decimal] = {}
    remainders: List[Tuple[Decimal, K]] = []
    for key, value in items:
        exact = value * target / total
        floored = exact.quantize(quantum, rounding=ROUND_DOWN)
        floors[key] = floored
        remainders.append((exact - floored, key))

    allocated = sum(floors.values(), ZERO)
    leftover_units = int(((target - allocated) / quantum).to_integral_value())

    # Largest remainder first; ties go to the smallest key
    remainders.sort(key=lambda pair: pair[1])
    remainders.sort(key=lambda pair: pair[0], reverse=True)
    for _, key in remainders[:leftover_units]:
        floors[key] += quantum

    return floors


def percentage_of(part: Decimal, whole: Decimal, places: int = 6) -> Decimal:
    """Single percentage rounded half-up, for values not part of an allocation."""
    quantum = quantum_for(places)
    if whole <= 0:
        return ZERO.quantize(quantum)
    return (part * HUNDRED / whole).quantize(quantum, rounding=ROUND_HALF_UP)
