"""
Tests for the five-bracket tax engine.

Covers:
- The canonical mixed-bracket sale with an order discount
- Per-bracket rounding (tax rounded once per bracket, not per line)
- Percentage discounts
- Unknown and missing brackets fall back to B
- Zero-price lines (undefined discount rate)
- Validation
- Conservation and reconciliation (properties)
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from fiscal_config.loader import load_configuration
from fiscal_engines.tax import TaxableLine, TaxBracketEngine, validate_lines
from fiscal_kernel.db.types import round_money
from fiscal_kernel.domain.dtos import DiscountType

D = Decimal

BRACKETS = load_configuration(environ={}).tax_brackets


def _line(code, qty, price, bracket="B"):
    return TaxableLine(item_code=code, name=f"Item {code}", quantity=D(qty), unit_price=D(price), tax_bracket=bracket)


@pytest.fixture
def engine():
    return TaxBracketEngine(BRACKETS)


class TestCanonicalSale:
    """2 x 100.00 in B, 1 x 50.00 in A, 30.00 order discount."""

    @pytest.fixture
    def breakdown(self, engine):
        return engine.compute_breakdown(
            [_line("A", "2", "100", "B"), _line("B", "1", "50", "A")],
            order_discount=D("30"),
        )

    def test_discount_split_pro_rata(self, breakdown):
        assert [l.discount_amount for l in breakdown.lines] == [D("24.00"), D("6.00")]
        assert [l.discount_rate for l in breakdown.lines] == [D("12.00"), D("12.00")]

    def test_taxable_per_line(self, breakdown):
        assert [l.taxable_amount for l in breakdown.lines] == [D("176.00"), D("44.00")]

    def test_bracket_totals(self, breakdown):
        assert breakdown.bracket("A").taxable_amount == D("44.00")
        assert breakdown.bracket("A").tax_amount == D("0.00")
        assert breakdown.bracket("B").taxable_amount == D("176.00")
        assert breakdown.bracket("B").tax_amount == D("28.16")
        for code in ("C", "D", "E"):
            assert breakdown.bracket(code).taxable_amount == 0

    def test_invoice_totals(self, breakdown):
        assert breakdown.total_before_discount == D("250.00")
        assert breakdown.total_discount == D("30.00")
        assert breakdown.total_taxable == D("220.00")
        assert breakdown.total_tax == D("28.16")
        assert breakdown.total_amount == D("248.16")
        assert breakdown.item_count == 2

    def test_all_five_brackets_listed_in_order(self, breakdown):
        assert [b.bracket for b in breakdown.brackets] == ["A", "B", "C", "D", "E"]

    def test_unknown_bracket_code_raises(self, breakdown):
        with pytest.raises(KeyError):
            breakdown.bracket("Z")


class TestBracketRounding:

    def test_tax_rounded_once_per_bracket(self, engine):
        # Per line: 0.16 x 0.03 = 0.0048 -> 0.00 each; per bracket: 0.16 x 0.09 = 0.0144 -> 0.01
        lines = [_line(str(i), "1", "0.03") for i in range(3)]
        breakdown = engine.compute_breakdown(lines)
        assert breakdown.bracket("B").tax_amount == D("0.01")
        assert sum(l.tax_amount for l in breakdown.lines) == D("0.01")

    def test_reduced_rate_bracket(self, engine):
        breakdown = engine.compute_breakdown([_line("E1", "3", "33.33", "E")])
        assert breakdown.bracket("E").tax_amount == round_money(D("99.99") * D("0.08"))


class TestDiscounts:

    def test_percentage_discount(self, engine):
        breakdown = engine.compute_breakdown(
            [_line("A", "1", "80"), _line("B", "1", "20")],
            order_discount=D("10"),
            discount_type=DiscountType.PERCENTAGE,
        )
        assert breakdown.total_discount == D("10.00")
        assert [l.discount_amount for l in breakdown.lines] == [D("8.00"), D("2.00")]

    def test_tiny_discount_stays_within_each_line(self, engine):
        lines = [_line("BIG", "1", "2.00")] + [_line(f"S{i}", "1", "1.00") for i in range(4)]
        breakdown = engine.compute_breakdown(lines, order_discount=D("0.03"))
        assert [l.discount_amount for l in breakdown.lines] == [
            D("0.01"), D("0.01"), D("0.00"), D("0.00"), D("0.00"),
        ]
        for line in breakdown.lines:
            assert line.taxable_amount <= line.original_amount
            assert line.tax_amount >= 0
        assert breakdown.total_discount == D("0.03")

    def test_no_discount(self, engine):
        breakdown = engine.compute_breakdown([_line("A", "1", "116")])
        assert breakdown.total_discount == 0
        assert breakdown.lines[0].discount_rate == D("0.00")
        assert breakdown.total_amount == D("134.56")


class TestBracketResolution:

    @pytest.mark.parametrize("code", [None, "", "Z", "  "])
    def test_fallback_to_b(self, engine, code):
        assert engine.resolve_bracket(code) == "B"

    def test_code_normalised(self, engine):
        assert engine.resolve_bracket(" e ") == "E"
        assert engine.rate_for("e") == D("0.08")

    def test_unknown_default_rejected(self):
        with pytest.raises(ValueError):
            TaxBracketEngine(BRACKETS, default_bracket="Z")


class TestZeroPriceLine:

    def test_discount_rate_undefined(self, engine, captured_logs):
        breakdown = engine.compute_breakdown(
            [_line("FREE", "1", "0"), _line("PAID", "1", "100")],
            order_discount=D("10"),
        )
        free, paid = breakdown.lines
        assert free.discount_rate is None
        assert free.discount_amount == 0
        assert paid.discount_amount == D("10.00")
        assert any(r["message"] == "discount_rate_undefined" for r in captured_logs())


class TestValidation:

    def test_empty_sale(self):
        assert validate_lines([]) == ["sale has no lines"]

    def test_every_problem_reported(self):
        problems = validate_lines(
            [
                TaxableLine("", "x", D("0"), D("1")),
                TaxableLine("b", "", D("1"), D("-1")),
            ]
        )
        assert "line 1: quantity must be positive" in problems
        assert "line 1: item code is required" in problems
        assert "line 2: unit price must not be negative" in problems
        assert "line 2: name is required" in problems

    def test_float_rejected(self):
        problems = validate_lines([TaxableLine("a", "x", 1.0, D("1"))])
        assert problems == ["line 1: quantity and unit price must be Decimal"]

    def test_discount_above_total(self):
        problems = validate_lines([_line("A", "1", "10")], order_discount=D("10.01"))
        assert problems == ["order discount 10.01 exceeds sale total 10.00"]

    def test_percentage_above_hundred(self):
        problems = validate_lines(
            [_line("A", "1", "10")], D("101"), DiscountType.PERCENTAGE
        )
        assert problems == ["percentage discount must not exceed 100"]

    def test_compute_raises(self, engine):
        with pytest.raises(ValueError, match="sale has no lines"):
            engine.compute_breakdown([])


_lines = st.lists(
    st.builds(
        TaxableLine,
        item_code=st.text(alphabet="ABCDEFGH0123456789", min_size=1, max_size=6),
        name=st.just("item"),
        quantity=st.integers(min_value=1, max_value=50).map(Decimal),
        unit_price=st.decimals(min_value=0, max_value=5000, places=2),
        tax_bracket=st.sampled_from(["A", "B", "C", "D", "E", None, "X"]),
    ),
    min_size=1,
    max_size=15,
)


class TestProperties:
    """Reconciliation holds for arbitrary sales."""

    @settings(max_examples=150, deadline=None)
    @given(lines=_lines, percent=st.integers(min_value=0, max_value=100))
    def test_conservation_and_reconciliation(self, lines, percent):
        engine = TaxBracketEngine(BRACKETS)
        breakdown = engine.compute_breakdown(
            lines, order_discount=D(percent), discount_type=DiscountType.PERCENTAGE
        )
        lines_out = breakdown.lines

        assert sum(l.taxable_amount for l in lines_out) + breakdown.total_discount == breakdown.total_before_discount
        assert sum(l.tax_amount for l in lines_out) == breakdown.total_tax
        assert sum(l.total_amount for l in lines_out) == breakdown.total_amount
        assert sum(b.taxable_amount for b in breakdown.brackets) == sum(l.taxable_amount for l in lines_out)
        for line in lines_out:
            assert 0 <= line.discount_amount <= line.original_amount
            assert 0 <= line.taxable_amount <= line.original_amount
            assert line.tax_amount >= 0

    @settings(max_examples=150, deadline=None)
    @given(lines=_lines)
    def test_bracket_tax_is_rounded_rate_times_taxable(self, lines):
        breakdown = TaxBracketEngine(BRACKETS).compute_breakdown(lines)
        for amounts in breakdown.brackets:
            assert amounts.tax_amount == round_money(amounts.taxable_amount * amounts.rate)
        taxable_b = sum(
            l.taxable_amount for l in breakdown.lines if l.tax_bracket == "B"
        )
        assert breakdown.bracket("B").taxable_amount == taxable_b
