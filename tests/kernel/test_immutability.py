"""
Tests for ORM immutability enforcement.

Covers:
- Acknowledged submission records are frozen
- Pending and errored records stay writable
- Nothing fiscal is ever deleted
- Catalog item codes never change once assigned
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fiscal_kernel.domain.dtos import AuthorityAcknowledgement, SubjectType
from fiscal_kernel.exceptions import ImmutabilityViolationError
from fiscal_kernel.models.catalog import CatalogItem, Ingredient
from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
from fiscal_kernel.models.sales_invoice import SalesInvoice, SalesInvoiceLine
from fiscal_kernel.services.submission_recorder import SubmissionRecorder

D = Decimal

ACK = AuthorityAcknowledgement(1, 101, "INTERNAL", "SIGNATURE", "20240315123001", "KRACU0100000001")


@pytest.fixture
def recorder(session, clock):
    return SubmissionRecorder(session, clock)


@pytest.fixture
def accepted(recorder):
    record = recorder.open(SubjectType.SALE, "order-1", "1", {"invcNo": 1})
    return recorder.record_success(record, "000", "It is succeeded", "20240315123001", ACK)


def _invoice():
    invoice = SalesInvoice(
        business_key="order-1",
        invoice_no=1,
        receipt_type_code="S",
        payment_method_code="01",
        discount_amount=D("0"),
        total_before_discount=D("116"),
        total_taxable=D("116"),
        total_tax=D("18.56"),
        total_amount=D("134.56"),
        bracket_amounts={},
        item_count=1,
        sold_at=datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc),
    )
    invoice.lines.append(
        SalesInvoiceLine(
            seq=1,
            item_code="ITEM-A",
            name="Item A",
            unit_code="U",
            quantity=D("1"),
            unit_price=D("116"),
            tax_bracket="B",
            original_amount=D("116"),
            discount_rate=D("0"),
            discount_amount=D("0"),
            taxable_amount=D("116"),
            tax_amount=D("18.56"),
            total_amount=D("134.56"),
        )
    )
    return invoice


def _catalog(model, item_code="KE2NTU0000001"):
    return model(
        external_id="1",
        name="Chapati",
        unit_code="U",
        cost=D("20"),
        item_code=item_code,
        item_class_code="5059690800",
        tax_bracket="B",
    )


class TestAcknowledgedSubmission:

    @pytest.mark.parametrize(
        "field, value",
        [
            ("signature", "FORGED"),
            ("internal_data", "OTHER"),
            ("receipt_counter", 2),
            ("status", "error"),
            ("reference_no", "99"),
            ("request_payload", {"invcNo": 2}),
        ],
    )
    def test_field_frozen(self, session, accepted, field, value):
        setattr(accepted, field, value)
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "SubmissionRecord"

    def test_delete_blocked(self, session, accepted):
        session.delete(accepted)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_violation_logged(self, session, accepted, captured_logs):
        accepted.signature = "FORGED"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        record = next(r for r in captured_logs() if r["message"] == "immutability_violation_blocked")
        assert record["field"] == "signature"


class TestWritableStates:

    def test_pending_to_success_allowed(self, session, recorder):
        record = recorder.open(SubjectType.SALE, "order-1", "1", {})
        recorder.record_success(record, "000", None, None, ACK)
        session.flush()

    def test_errored_record_updatable(self, session, recorder):
        record = recorder.record_error(
            recorder.open(SubjectType.SALE, "order-1", "1", {}), "failed"
        )
        record.error_message = "failed again"
        session.flush()
        recorder.reopen(record)
        assert record.attempt_count == 2

    def test_pending_delete_still_blocked(self, session, recorder):
        record = recorder.open(SubjectType.SALE, "order-1", "1", {})
        session.delete(record)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestInvoices:

    def test_invoice_delete_blocked(self, session):
        invoice = _invoice()
        session.add(invoice)
        session.flush()
        session.delete(invoice)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_purchase_delete_blocked(self, session):
        purchase = PurchaseInvoice(
            business_key="P051234567X:4471",
            purchase_no=1,
            supplier_tin="P051234567X",
            supplier_name="Unga Ltd",
            supplier_branch_id="00",
            supplier_invoice_no=4471,
            payment_method_code="01",
            total_taxable=D("100"),
            total_tax=D("16"),
            total_amount=D("116"),
            bracket_amounts={},
            item_count=1,
            purchased_at=datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc),
        )
        session.add(purchase)
        session.flush()
        session.delete(purchase)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestCatalog:

    @pytest.mark.parametrize("model", [CatalogItem, Ingredient])
    def test_item_code_frozen(self, session, model):
        item = _catalog(model)
        session.add(item)
        session.flush()
        item.item_code = "KE2NTU0000002"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == model.__name__

    @pytest.mark.parametrize("model", [CatalogItem, Ingredient])
    def test_other_fields_updatable(self, session, model):
        item = _catalog(model)
        session.add(item)
        session.flush()
        item.name = "Chapati (large)"
        item.cost = D("25")
        session.flush()

    @pytest.mark.parametrize("model", [CatalogItem, Ingredient])
    def test_delete_blocked(self, session, model):
        item = _catalog(model)
        session.add(item)
        session.flush()
        session.delete(item)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
