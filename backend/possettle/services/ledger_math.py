# Overview: Pure balance folds over a cash session's movement sequence.

"""
Cash Ledger Math

WHY: Balances are always recomputed from the movements, in ledger order,
never kept as a running column. The fold is pure, so repeating it over the
same sequence yields the same result.

- theoretical: what should be physically in the drawer
  (opening float + INCOME + SALE_SETTLEMENT - EXPENSE)
- total recognized: theoretical plus PENDING_SALE_SETTLEMENT
  (card, wire and QR revenue that never touches the drawer)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol
from datetime import datetime

from ..constants import (
    MOVEMENT_INCOME,
    MOVEMENT_EXPENSE,
    MOVEMENT_SALE_SETTLEMENT,
    MOVEMENT_PENDING_SALE_SETTLEMENT,
    VALID_MOVEMENT_KINDS,
)
from .errors import LedgerCorruption


class MovementLike(Protocol):
    sequence: int
    kind: str
    amount_cents: int
    posted_at: datetime


# Contribution of each kind to the drawer count
CASH_COUNT_SIGNS = {
    MOVEMENT_INCOME: 1,
    MOVEMENT_SALE_SETTLEMENT: 1,
    MOVEMENT_EXPENSE: -1,
    MOVEMENT_PENDING_SALE_SETTLEMENT: 0,
}


@dataclass(frozen=True)
class LedgerBalance:
    opening_float_cents: int
    theoretical_cents: int
    total_recognized_cents: int
    movement_count: int
    totals_by_kind: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "opening_float_cents": self.opening_float_cents,
            "theoretical_cents": self.theoretical_cents,
            "total_recognized_cents": self.total_recognized_cents,
            "movement_count": self.movement_count,
            "totals_by_kind": dict(self.totals_by_kind),
        }


def check_sequence(movements: Iterable[MovementLike]) -> list[MovementLike]:
    """
    Verify the ledger is contiguous (1..n) and chronological.

    Raises:
        LedgerCorruption: on gaps, reordering, unknown kinds or non-positive amounts
    """
    ordered = list(movements)
    previous_at = None
    for expected, movement in enumerate(ordered, start=1):
        if movement.sequence != expected:
            raise LedgerCorruption(
                f"Movement sequence broken: expected {expected}, found {movement.sequence}"
            )
        if movement.kind not in VALID_MOVEMENT_KINDS:
            raise LedgerCorruption(f"Unknown movement kind {movement.kind!r} at {expected}")
        if movement.amount_cents <= 0:
            raise LedgerCorruption(f"Non-positive movement amount at {expected}")
        if previous_at is not None and movement.posted_at < previous_at:
            raise LedgerCorruption(f"Movement {expected} posted before its predecessor")
        previous_at = movement.posted_at
    return ordered


def fold_movements(opening_float_cents: int, movements: Iterable[MovementLike]) -> LedgerBalance:
    """Fold the movements, in ledger order, into a LedgerBalance."""
    ordered = check_sequence(movements)

    totals = {kind: 0 for kind in VALID_MOVEMENT_KINDS}
    theoretical = opening_float_cents
    for movement in ordered:
        totals[movement.kind] += movement.amount_cents
        theoretical += CASH_COUNT_SIGNS[movement.kind] * movement.amount_cents

    return LedgerBalance(
        opening_float_cents=opening_float_cents,
        theoretical_cents=theoretical,
        total_recognized_cents=theoretical + totals[MOVEMENT_PENDING_SALE_SETTLEMENT],
        movement_count=len(ordered),
        totals_by_kind=totals,
    )
