"""
Tests for LedgerSequenceAllocator.

Covers:
- Previews do not consume
- Reservations are gap-free and strictly increasing
- Ledger floor: codes and invoices written by other paths are never reissued
- Unit namespaces are independent ("L" never reads "LTR")
- Counter width exhaustion
- Unreadable ledger raises instead of guessing
- Lock timeouts raise a retryable contention error
- Purchase numbers have their own namespace and ledger floor
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import Column, Integer, MetaData, String, Table
from sqlalchemy.exc import OperationalError

from fiscal_kernel.db.engine import is_lock_timeout
from fiscal_kernel.exceptions import (
    LedgerUnreadableError,
    SequenceContentionError,
    SequenceExhaustedError,
)
from fiscal_kernel.models.catalog import CatalogItem, Ingredient
from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
from fiscal_kernel.models.sequence_counter import SequenceCounter
from fiscal_kernel.services.sequence_service import (
    INVOICE_NAMESPACE,
    PURCHASE_NAMESPACE,
    LedgerSequenceAllocator,
    item_code_namespace,
)


def _catalog_row(model, external_id, item_code, unit_code):
    return model(
        external_id=external_id,
        name=external_id,
        unit_code=unit_code,
        cost=Decimal("1"),
        item_code=item_code,
        item_class_code="5059690800",
        tax_bracket="B",
    )


@pytest.fixture
def allocator(session):
    return LedgerSequenceAllocator(session, item_code_prefix="KE2NT", counter_width=7)


class TestPreview:
    """next_* never consumes."""

    def test_first_item_code(self, allocator):
        assert allocator.next_item_code("KG") == "KE2NTKG0000001"

    def test_preview_is_repeatable(self, allocator):
        assert allocator.next_item_code("KG") == allocator.next_item_code("KG")
        assert allocator.next_invoice_number() == allocator.next_invoice_number() == 1

    def test_preview_follows_reservation(self, allocator):
        allocator.reserve_item_code("KG")
        assert allocator.next_item_code("KG") == "KE2NTKG0000002"


class TestReservation:
    """reserve_* consumes exactly one value."""

    def test_invoice_numbers_gap_free(self, allocator):
        assert [allocator.reserve_invoice_number() for _ in range(5)] == [1, 2, 3, 4, 5]

    def test_item_codes_gap_free(self, allocator):
        codes = [allocator.reserve_item_code("U") for _ in range(3)]
        assert codes == ["KE2NTU0000001", "KE2NTU0000002", "KE2NTU0000003"]

    def test_counter_row_persisted(self, session, allocator):
        allocator.reserve_invoice_number()
        allocator.reserve_invoice_number()
        counter = session.query(SequenceCounter).filter_by(name=INVOICE_NAMESPACE).one()
        assert counter.current_value == 2

    def test_namespaces_independent(self, allocator):
        allocator.reserve_item_code("KG")
        allocator.reserve_item_code("KG")
        assert allocator.reserve_item_code("L") == "KE2NTL0000001"
        assert allocator.reserve_invoice_number() == 1

    def test_reservation_logged(self, allocator, captured_logs):
        allocator.reserve_item_code("KG")
        record = next(r for r in captured_logs() if r["message"] == "sequence_reserved")
        assert record["sequence_name"] == item_code_namespace("KG")
        assert record["value"] == 1

    def test_unnormalised_unit_rejected(self, allocator):
        with pytest.raises(ValueError):
            allocator.reserve_item_code("kgs")


class TestLedgerFloor:
    """The ledger maximum wins over a lagging counter."""

    def test_existing_product_codes(self, session, allocator):
        session.add(_catalog_row(CatalogItem, "p1", "KE2NTKG0000005", "KG"))
        session.flush()
        assert allocator.next_item_code("KG") == "KE2NTKG0000006"
        assert allocator.reserve_item_code("KG") == "KE2NTKG0000006"

    def test_scans_every_source(self, session, allocator):
        session.add(_catalog_row(CatalogItem, "p1", "KE2NTKG0000005", "KG"))
        session.add(_catalog_row(Ingredient, "i1", "KE2NTKG0000009", "KG"))
        session.flush()
        assert allocator.reserve_item_code("KG") == "KE2NTKG0000010"

    def test_l_does_not_read_ltr(self, session, allocator):
        session.add(_catalog_row(CatalogItem, "p1", "KE2NTLTR0000007", "LTR"))
        session.flush()
        assert allocator.reserve_item_code("L") == "KE2NTL0000001"
        assert allocator.reserve_item_code("LTR") == "KE2NTLTR0000008"

    def test_foreign_prefix_ignored(self, session, allocator):
        session.add(_catalog_row(CatalogItem, "p1", "UG1NTKG0000050", "KG"))
        session.flush()
        assert allocator.reserve_item_code("KG") == "KE2NTKG0000001"


class TestExhaustion:

    def test_counter_outgrows_width(self, session):
        allocator = LedgerSequenceAllocator(session, item_code_prefix="KE2NT", counter_width=1)
        for expected in range(1, 10):
            assert allocator.reserve_item_code("U") == f"KE2NTU{expected}"
        with pytest.raises(SequenceExhaustedError):
            allocator.reserve_item_code("U")


class TestUnreadableLedger:
    """A failed scan raises; the allocator never falls back to 1."""

    def _missing_column(self):
        table = Table(
            "legacy_invoices",
            MetaData(),
            Column("id", String(36), primary_key=True),
            Column("invoice_no", Integer),
        )
        return table.c.invoice_no

    def test_preview_raises(self, session):
        allocator = LedgerSequenceAllocator(session, invoice_source=self._missing_column())
        with pytest.raises(LedgerUnreadableError) as exc_info:
            allocator.next_invoice_number()
        assert exc_info.value.namespace == INVOICE_NAMESPACE
        assert exc_info.value.code == "LEDGER_UNREADABLE"

    def test_reservation_raises(self, session):
        allocator = LedgerSequenceAllocator(session, invoice_source=self._missing_column())
        with pytest.raises(LedgerUnreadableError):
            allocator.reserve_invoice_number()


class TestPurchaseNumbers:

    def test_own_namespace(self, session, allocator):
        allocator.reserve_invoice_number()
        allocator.reserve_invoice_number()
        assert allocator.reserve_purchase_number() == 1
        assert allocator.reserve_purchase_number() == 2
        counter = session.query(SequenceCounter).filter_by(name=PURCHASE_NAMESPACE).one()
        assert counter.current_value == 2

    def test_floor_from_stored_purchases(self, session, allocator):
        session.add(
            PurchaseInvoice(
                business_key="P051234567X:90",
                purchase_no=41,
                supplier_tin="P051234567X",
                supplier_name="Unga Ltd",
                supplier_branch_id="00",
                supplier_invoice_no=90,
                payment_method_code="01",
                total_taxable=Decimal("100"),
                total_tax=Decimal("16"),
                total_amount=Decimal("116"),
                bracket_amounts={},
                item_count=1,
                purchased_at=datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc),
            )
        )
        session.flush()
        assert allocator.reserve_purchase_number() == 42
        assert allocator.reserve_invoice_number() == 1


class _Locked(Exception):
    pass


def _lock_error(message="database is locked", pgcode=None):
    orig = _Locked(message)
    orig.pgcode = pgcode
    return OperationalError("SELECT sequence_counters", {}, orig)


class TestContention:
    """A lock that is not granted in time is not an unreadable ledger."""

    def test_locked_counter_raises_contention(self, allocator, monkeypatch, captured_logs):
        def _locked(namespace):
            raise _lock_error()

        monkeypatch.setattr(allocator, "_lock_counter", _locked)
        with pytest.raises(SequenceContentionError) as exc_info:
            allocator.reserve_invoice_number()
        assert exc_info.value.namespace == INVOICE_NAMESPACE
        assert exc_info.value.code == "SEQUENCE_CONTENDED"
        assert any(r["message"] == "sequence_contended" for r in captured_logs())

    def test_locked_preview_raises_contention(self, allocator, monkeypatch):
        def _locked():
            raise _lock_error()

        monkeypatch.setattr(allocator, "_max_invoice_no", _locked)
        with pytest.raises(SequenceContentionError):
            allocator.next_invoice_number()

    def test_other_operational_errors_stay_unreadable(self, allocator, monkeypatch):
        def _broken(namespace):
            raise _lock_error("disk I/O error")

        monkeypatch.setattr(allocator, "_lock_counter", _broken)
        with pytest.raises(LedgerUnreadableError):
            allocator.reserve_invoice_number()

    @pytest.mark.parametrize(
        "error, expected",
        [
            (_lock_error("database is locked"), True),
            (_lock_error("database table is locked"), True),
            (_lock_error("canceling statement due to lock timeout", pgcode="55P03"), True),
            (_lock_error("deadlock detected", pgcode="40P01"), True),
            (_lock_error("disk I/O error"), False),
            (ValueError("database is locked"), False),
        ],
    )
    def test_is_lock_timeout(self, error, expected):
        assert is_lock_timeout(error) is expected


class TestGapFreeProperty:
    """Any interleaving of units yields consecutive counters per unit."""

    @settings(
        max_examples=30,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(units=st.lists(st.sampled_from(["U", "KG", "L", "LTR", "M", "M2"]), min_size=1, max_size=20))
    def test_reservations_consecutive(self, allocator, units):
        issued: dict[str, list[int]] = {}
        for unit in units:
            preview = allocator.next_item_code(unit)
            code = allocator.reserve_item_code(unit)
            assert code == preview
            issued.setdefault(unit, []).append(int(code[-7:]))
        for counters in issued.values():
            assert counters == list(range(counters[0], counters[0] + len(counters)))
