"""
Module: fiscal_engines.allocation
Responsibility:
    Split an amount across weighted targets in whole cents using the
    largest-remainder method, so the shares add back to the amount.  Used
    for order-discount allocation across lines and for spreading a
    bracket's tax across the lines in that bracket.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - sum(shares) == amount, to the cent.
    - Every share lies between the exact share rounded down and rounded
      up to the cent, so no share is negative and none exceeds its
      target's proportional ceiling.
    - Zero amount, or all-zero weights, yields all-zero shares.
    - Leftover cents go to the largest fractional remainders (ties: larger
      weight, then earlier target), so no zero-weight target ever absorbs
      a penny.

Failure modes:
    - ValueError on negative weights or a negative amount.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from fiscal_kernel.db.types import CENT, ZERO, round_money


@dataclass(frozen=True, slots=True)
class AllocationResult:
    """Shares in the same order as the weights they were computed from."""

    amount: Decimal
    shares: tuple[Decimal, ...]
    residual_indices: tuple[int, ...] = ()

    @property
    def total_allocated(self) -> Decimal:
        return sum(self.shares, ZERO)


class ProRataAllocator:
    """Pro-rata allocation with deterministic cent rounding."""

    def allocate(self, amount: Decimal, weights: Sequence[Decimal]) -> AllocationResult:
        """
        Allocate ``amount`` in proportion to ``weights``.

        Preconditions:
            - ``amount`` >= 0; it is rounded to cents first.
            - every weight >= 0.
        Postconditions:
            - ``sum(shares) == round_money(amount)``.
            - ``0 <= share`` for every share.
            - ``residual_indices`` lists the targets that received one
              extra cent over their rounded-down share.
        """
        amount = round_money(amount)
        if amount < ZERO:
            raise ValueError(f"Cannot allocate a negative amount: {amount}")
        if any(w < ZERO for w in weights):
            raise ValueError("Allocation weights must be non-negative")

        total_weight = sum(weights, ZERO)
        if not weights or amount == ZERO or total_weight == ZERO:
            return AllocationResult(amount, tuple(ZERO for _ in weights))

        exact = [amount * weight / total_weight for weight in weights]
        shares = [value.quantize(CENT, rounding=ROUND_DOWN) for value in exact]
        leftover_cents = int((amount - sum(shares, ZERO)) / CENT)

        ranked = sorted(
            (i for i, weight in enumerate(weights) if weight > ZERO),
            key=lambda i: (-(exact[i] - shares[i]), -weights[i], i),
        )
        receivers = tuple(sorted(ranked[:leftover_cents]))
        for i in receivers:
            shares[i] += CENT
        return AllocationResult(amount, tuple(shares), receivers)
