"""
Tests for SubmissionRetryService.

Covers:
- Errored sales, catalog items and purchases are replayed with their
  stored requests
- Summary counts
- max_attempts skip
- Batch limit
- Successful and pending records are left alone
"""

import dataclasses

import pytest

from fiscal_config.schema import SubmissionPolicy
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.domain.dtos import CatalogItemRequest, PurchaseOrder, SubjectType, Supplier
from fiscal_kernel.models.submission_record import SubmissionStatus
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services.authority_client import (
    INSERT_PURCHASE_PATH,
    INSERT_STOCK_IO_PATH,
    SAVE_ITEM_PATH,
    SAVE_SALE_PATH,
)
from fiscal_services.catalog_registration import CatalogRegistrationService
from fiscal_services.purchase_submission import PurchaseSubmissionService
from fiscal_services.sale_submission import SaleSubmissionService
from fiscal_services.submission_retry import SubmissionRetryService


def _services(session_factory, config, client, clock):
    sales = SaleSubmissionService(session_factory, config, client, clock)
    catalog = CatalogRegistrationService(session_factory, config, client, clock)
    retry = SubmissionRetryService(session_factory, config, [sales, catalog])
    return sales, catalog, retry


@pytest.fixture
def services(session_factory, config, client, clock):
    return _services(session_factory, config, client, clock)


def _status(session_factory, subject_type, key):
    with session_factory() as s:
        return SubmissionRecorder(s).get(subject_type, key).status


class TestReplay:

    def test_errored_sales_and_items_retried(self, services, make_order, authority, session_factory):
        sales, catalog, retry = services
        authority.script(SAVE_SALE_PATH, authority.rejection(), authority.rejection())
        authority.script(SAVE_ITEM_PATH, authority.rejection())
        sales.submit(make_order("order-1"))
        sales.submit(make_order("order-2"))
        catalog.register(CatalogItemRequest("1", "Chapati", None, "pcs", 30))

        summary = retry.retry_failed()

        assert (summary.retried_count, summary.succeeded, summary.failed, summary.skipped) == (3, 3, 0, 0)
        assert _status(session_factory, SubjectType.SALE, "order-1") == SubmissionStatus.SUCCESS
        assert _status(session_factory, SubjectType.SALE, "order-2") == SubmissionStatus.SUCCESS
        assert _status(session_factory, SubjectType.CATALOG_ITEM, "product:1") == SubmissionStatus.SUCCESS

    def test_replayed_request_unchanged(self, services, make_order, authority):
        sales, _, retry = services
        authority.script(SAVE_SALE_PATH, authority.rejection())
        sales.submit(make_order())
        retry.retry_failed()
        first, second = authority.calls(SAVE_SALE_PATH)
        assert first == second
        assert second["invcNo"] == 1

    def test_replayed_sale_gets_receipt_and_stock_release(self, services, make_order, authority):
        sales, _, retry = services
        authority.script(SAVE_SALE_PATH, authority.rejection())
        sales.submit(make_order())
        (outcome,) = retry.retry_failed().outcomes
        assert outcome.succeeded
        assert outcome.receipt.qr_payload == "P000000000X+1+SIGN0001ZXCVBNMQWER"
        assert outcome.stock_released
        assert len(authority.calls(INSERT_STOCK_IO_PATH)) == 1

    def test_errored_purchase_retried(self, session_factory, config, client, clock, authority, line):
        purchases = PurchaseSubmissionService(session_factory, config, client, clock)
        retry = SubmissionRetryService(session_factory, config, [purchases])
        authority.script(INSERT_PURCHASE_PATH, authority.rejection())
        order = PurchaseOrder(Supplier("P051234567X", "Unga Ltd"), 4471, (line(),))
        purchases.submit(order)

        (outcome,) = retry.retry_failed().outcomes

        assert outcome.succeeded
        assert outcome.purchase_no == 1
        first, second = authority.calls(INSERT_PURCHASE_PATH)
        assert first == second
        assert _status(session_factory, SubjectType.PURCHASE, "P051234567X:4471") == SubmissionStatus.SUCCESS

    def test_still_failing(self, services, make_order, authority, session_factory):
        sales, _, retry = services
        authority.script(SAVE_SALE_PATH, authority.rejection(), 503)
        sales.submit(make_order())

        summary = retry.retry_failed()

        assert (summary.retried_count, summary.succeeded, summary.failed) == (1, 0, 1)
        (outcome,) = summary.outcomes
        assert outcome.attempt_count == 2
        assert outcome.result_code is None
        assert _status(session_factory, SubjectType.SALE, "order-1") == SubmissionStatus.ERROR


class TestSelection:

    def test_nothing_to_retry(self, services):
        summary = services[2].retry_failed()
        assert (summary.retried_count, summary.skipped, summary.outcomes) == (0, 0, ())

    def test_success_and_pending_ignored(self, services, make_order, authority, session_factory, clock):
        sales, _, retry = services
        sales.submit(make_order("order-1"))
        with session_scope(session_factory) as s:
            SubmissionRecorder(s, clock).open(SubjectType.SALE, "order-2", "99", {})

        summary = retry.retry_failed()

        assert summary.retried_count == 0
        assert len(authority.calls(SAVE_SALE_PATH)) == 1

    def test_limit(self, services, make_order, authority, session_factory):
        sales, _, retry = services
        authority.script(SAVE_SALE_PATH, authority.rejection(), authority.rejection())
        sales.submit(make_order("order-1"))
        sales.submit(make_order("order-2"))

        summary = retry.retry_failed(limit=1)

        assert summary.retried_count == 1
        assert _status(session_factory, SubjectType.SALE, "order-1") == SubmissionStatus.SUCCESS
        assert _status(session_factory, SubjectType.SALE, "order-2") == SubmissionStatus.ERROR

    def test_max_attempts_skipped(self, session_factory, config, client, clock, make_order, authority, captured_logs):
        capped = dataclasses.replace(config, submission=SubmissionPolicy(max_attempts=1))
        sales, _, retry = _services(session_factory, capped, client, clock)
        authority.script(SAVE_SALE_PATH, authority.rejection())
        sales.submit(make_order())

        summary = retry.retry_failed()

        assert (summary.retried_count, summary.skipped) == (0, 1)
        assert len(authority.calls(SAVE_SALE_PATH)) == 1
        assert any(r["message"] == "retry_skipped_max_attempts" for r in captured_logs())

    def test_only_registered_flows(self, session_factory, config, client, clock, authority):
        catalog = CatalogRegistrationService(session_factory, config, client, clock)
        retry = SubmissionRetryService(session_factory, config, [catalog])
        with session_scope(session_factory) as s:
            recorder = SubmissionRecorder(s, clock)
            recorder.record_error(recorder.open(SubjectType.SALE, "order-1", "1", {}), "failed")

        assert retry.retry_failed().retried_count == 0
        assert authority.requests == []
