"""
Module: fiscal_engines.tax
Responsibility:
    Five-bracket VAT computation for one sale: allocate the order discount
    across lines in proportion to their original amounts, total the
    discounted (taxable) amounts per bracket, and tax each bracket total
    once at its statutory rate.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Bracket rates are
    injected at construction; nothing is read from ambient globals.

Algorithm, per line:
    1. original   = round(unit_price x quantity)
    2. discount   = order_discount x original / sum(original)  (cent shares,
                    residual on the largest line; 0 when sum is 0)
    3. taxable    = original - discount
    Per bracket:
    4. taxable[b] = sum(taxable of lines in b)
    5. tax[b]     = round(taxable[b] x rate[b])   -- rounded once, here
    6. line tax   = tax[b] spread over the bracket's lines by taxable share

Invariants enforced:
    - Conservation: sum(taxable) + sum(discount) == sum(original).
    - Reconciliation: sum(line tax) == sum(tax[b]) == total_tax and
      sum(line total) == total_amount, to the cent.
    - Unknown or missing bracket codes are taxed as the default bracket (B).
    - Decimal only; floats are rejected by validation.

Failure modes:
    - ValueError when validate_lines() reports problems.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from fiscal_engines.allocation import ProRataAllocator
from fiscal_engines.tracer import traced_engine
from fiscal_kernel.db.types import ZERO, round_money
from fiscal_kernel.domain.dtos import DiscountType
from fiscal_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from fiscal_config.schema import TaxBracketDef

logger = get_logger("engines.tax")

HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class TaxableLine:
    """Input line: what was sold, how many, at what price, in which bracket."""

    item_code: str
    name: str
    quantity: Decimal
    unit_price: Decimal
    tax_bracket: str | None = None


@dataclass(frozen=True, slots=True)
class LineBreakdown:
    """Computed amounts for one line, in submission order."""

    seq: int
    item_code: str
    name: str
    quantity: Decimal
    unit_price: Decimal
    tax_bracket: str
    original_amount: Decimal
    discount_rate: Decimal | None  # percent; None when original is zero
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal

    @property
    def total_amount(self) -> Decimal:
        return self.taxable_amount + self.tax_amount


@dataclass(frozen=True, slots=True)
class BracketAmounts:
    bracket: str
    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal


@dataclass(frozen=True, slots=True)
class TaxBreakdown:
    """
    Result of compute_breakdown.

    ``brackets`` always holds every configured bracket in order (A..E),
    including empty ones, because the Authority payload and the receipt
    table both list all five.
    """

    lines: tuple[LineBreakdown, ...]
    brackets: tuple[BracketAmounts, ...]
    order_discount: Decimal

    @property
    def item_count(self) -> int:
        return len(self.lines)

    @property
    def total_before_discount(self) -> Decimal:
        return sum((line.original_amount for line in self.lines), ZERO)

    @property
    def total_discount(self) -> Decimal:
        return sum((line.discount_amount for line in self.lines), ZERO)

    @property
    def total_taxable(self) -> Decimal:
        return sum((b.taxable_amount for b in self.brackets), ZERO)

    @property
    def total_tax(self) -> Decimal:
        return sum((b.tax_amount for b in self.brackets), ZERO)

    @property
    def total_amount(self) -> Decimal:
        return self.total_taxable + self.total_tax

    def bracket(self, code: str) -> BracketAmounts:
        for amounts in self.brackets:
            if amounts.bracket == code:
                return amounts
        raise KeyError(code)


def discount_amount_for(
    order_discount: Decimal,
    discount_type: DiscountType,
    total_before_discount: Decimal,
) -> Decimal:
    """Turn a percentage discount into an amount; amounts pass through."""
    if discount_type == DiscountType.PERCENTAGE:
        return round_money(total_before_discount * order_discount / HUNDRED)
    return round_money(order_discount)


def validate_lines(
    lines: Sequence[TaxableLine],
    order_discount: Decimal = ZERO,
    discount_type: DiscountType = DiscountType.AMOUNT,
) -> list[str]:
    """Every problem with the inputs; empty when computable."""
    problems: list[str] = []
    if not lines:
        problems.append("sale has no lines")
    for i, line in enumerate(lines, start=1):
        if not isinstance(line.quantity, Decimal) or not isinstance(line.unit_price, Decimal):
            problems.append(f"line {i}: quantity and unit price must be Decimal")
            continue
        if not line.quantity.is_finite() or line.quantity <= ZERO:
            problems.append(f"line {i}: quantity must be positive")
        if not line.unit_price.is_finite() or line.unit_price < ZERO:
            problems.append(f"line {i}: unit price must not be negative")
        if not line.item_code:
            problems.append(f"line {i}: item code is required")
        if not line.name:
            problems.append(f"line {i}: name is required")

    if not isinstance(order_discount, Decimal) or not order_discount.is_finite():
        problems.append("order discount must be a finite Decimal")
    elif order_discount < ZERO:
        problems.append("order discount must not be negative")
    elif discount_type == DiscountType.PERCENTAGE and order_discount > HUNDRED:
        problems.append("percentage discount must not exceed 100")
    elif not problems and discount_type == DiscountType.AMOUNT:
        total = sum((round_money(l.unit_price * l.quantity) for l in lines), ZERO)
        if round_money(order_discount) > total:
            problems.append(f"order discount {order_discount} exceeds sale total {total}")
    return problems


class TaxBracketEngine:
    """
    Computes per-bracket and per-line tax for a sale.

    Usage:
        engine = TaxBracketEngine(config.tax_brackets)
        breakdown = engine.compute_breakdown(lines, order_discount=Decimal("30"))
    """

    def __init__(
        self,
        brackets: Sequence[TaxBracketDef],
        default_bracket: str = "B",
        allocator: ProRataAllocator | None = None,
    ):
        self._order = tuple(b.code for b in brackets)
        self._rates = {b.code: b.rate for b in brackets}
        if default_bracket not in self._rates:
            raise ValueError(f"Default bracket {default_bracket} is not configured")
        self._default = default_bracket
        self._allocator = allocator or ProRataAllocator()

    def resolve_bracket(self, code: str | None) -> str:
        if code:
            code = code.strip().upper()
            if code in self._rates:
                return code
        return self._default

    def rate_for(self, code: str | None) -> Decimal:
        return self._rates[self.resolve_bracket(code)]

    @traced_engine("tax_brackets", "1.0", fingerprint_fields=("order_discount", "discount_type"))
    def compute_breakdown(
        self,
        lines: Sequence[TaxableLine],
        order_discount: Decimal = ZERO,
        discount_type: DiscountType = DiscountType.AMOUNT,
    ) -> TaxBreakdown:
        """
        Compute the breakdown for ``lines``.

        Raises:
            ValueError: listing every validation problem.
        """
        problems = validate_lines(lines, order_discount, discount_type)
        if problems:
            raise ValueError("; ".join(problems))

        originals = [round_money(line.unit_price * line.quantity) for line in lines]
        total_original = sum(originals, ZERO)
        discount = discount_amount_for(order_discount, discount_type, total_original)

        discounts = self._allocator.allocate(discount, originals).shares
        taxables = [o - d for o, d in zip(originals, discounts)]
        brackets = [self.resolve_bracket(line.tax_bracket) for line in lines]

        bracket_totals: list[BracketAmounts] = []
        line_tax = [ZERO] * len(lines)
        for code in self._order:
            members = [i for i, b in enumerate(brackets) if b == code]
            taxable = sum((taxables[i] for i in members), ZERO)
            tax = round_money(taxable * self._rates[code])
            shares = self._allocator.allocate(tax, [taxables[i] for i in members]).shares
            for i, share in zip(members, shares):
                line_tax[i] = share
            bracket_totals.append(BracketAmounts(code, self._rates[code], taxable, tax))

        breakdown_lines = []
        for i, line in enumerate(lines):
            breakdown_lines.append(
                LineBreakdown(
                    seq=i + 1,
                    item_code=line.item_code,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    tax_bracket=brackets[i],
                    original_amount=originals[i],
                    discount_rate=self._discount_rate(line, originals[i], discounts[i]),
                    discount_amount=discounts[i],
                    taxable_amount=taxables[i],
                    tax_amount=line_tax[i],
                )
            )

        result = TaxBreakdown(tuple(breakdown_lines), tuple(bracket_totals), discount)
        logger.debug(
            "tax_breakdown_computed",
            extra={
                "line_count": result.item_count,
                "total_taxable": str(result.total_taxable),
                "total_tax": str(result.total_tax),
                "total_discount": str(result.total_discount),
            },
        )
        return result

    @staticmethod
    def _discount_rate(line: TaxableLine, original: Decimal, discount: Decimal) -> Decimal | None:
        if original == ZERO:
            # No base to take a percentage of; left undefined rather than 0.
            logger.warning(
                "discount_rate_undefined",
                extra={"item_code": line.item_code, "unit_price": str(line.unit_price)},
            )
            return None
        return round_money(discount / original * HUNDRED)
