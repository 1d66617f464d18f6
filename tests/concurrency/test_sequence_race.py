"""
Concurrent reservations against a real, multi-connection database.

Covers:
- Parallel invoice reservations are unique and gap-free
- Parallel item-code reservations in one unit namespace
- Parallel sale submissions get invoice numbers 1..N
- A lock held past the busy timeout is reported as contention, not as an
  unreadable ledger

Runs on a file-backed SQLite database in tmp_path, or on the database in
FISCAL_TEST_DATABASE_URL when that is a server database.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select, text
from sqlalchemy.engine import make_url

from fiscal_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from fiscal_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from fiscal_kernel.exceptions import SequenceContentionError
from fiscal_kernel.models.sales_invoice import SalesInvoice
from fiscal_kernel.services.sequence_service import LedgerSequenceAllocator
from fiscal_services.fiscal_engine import FiscalEngine
from fiscal_services.sale_submission import SaleSubmissionService

WORKERS = 8


def _race_url(tmp_path) -> str:
    url = os.environ.get("FISCAL_TEST_DATABASE_URL")
    if url and make_url(url).get_backend_name() != "sqlite":
        return url
    return f"sqlite:///{tmp_path / 'race.db'}"


def _is_sqlite() -> bool:
    return get_engine().dialect.name == "sqlite"


@pytest.fixture
def open_database(tmp_path):
    """Open the race database; ``open_database(busy_timeout=0.2)`` shortens the wait."""
    opened = []

    def _open(**kwargs):
        eng = init_engine_from_url(_race_url(tmp_path), **kwargs)
        drop_tables(eng)
        create_tables(eng)
        register_immutability_listeners()
        opened.append(eng)
        return get_session_factory()

    yield _open

    unregister_immutability_listeners()
    for eng in opened:
        drop_tables(eng)
    reset_engine()


@pytest.fixture
def race_factory(open_database):
    return open_database()


def _run_together(task, count=WORKERS):
    """Start ``count`` calls of ``task`` at once; return (values, error names)."""
    barrier = threading.Barrier(count)

    def _call(i):
        barrier.wait()
        return task(i)

    values, errors = [], []
    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(_call, i) for i in range(count)]
        for future in futures:
            try:
                values.append(future.result())
            except Exception as exc:
                errors.append(type(exc).__name__)
    return values, errors


class TestParallelReservations:

    def test_invoice_numbers_unique_and_gap_free(self, race_factory):
        def reserve(_):
            with session_scope(race_factory) as session:
                return LedgerSequenceAllocator(session).reserve_invoice_number()

        values, errors = _run_together(reserve)
        assert errors == []
        assert sorted(values) == list(range(1, WORKERS + 1))

    def test_item_codes_unique_and_gap_free(self, race_factory):
        def reserve(_):
            with session_scope(race_factory) as session:
                return LedgerSequenceAllocator(session).reserve_item_code("KG")

        values, errors = _run_together(reserve)
        assert errors == []
        assert sorted(values) == [f"KE2NTKG{n:07d}" for n in range(1, WORKERS + 1)]

    def test_sales_get_consecutive_invoices(self, race_factory, config, client, clock, make_order):
        service = SaleSubmissionService(race_factory, config, client, clock)

        def submit(i):
            return service.submit(make_order(f"order-{i}")).invoice_no

        values, errors = _run_together(submit)
        assert errors == []
        assert sorted(values) == list(range(1, WORKERS + 1))
        with race_factory() as session:
            stored = session.execute(select(SalesInvoice.invoice_no)).scalars().all()
        assert sorted(stored) == list(range(1, WORKERS + 1))


class TestLockTimeout:
    """A writer that cannot get the lock in time gets a retryable error."""

    @pytest.fixture
    def holder(self, open_database):
        """A session holding the database write lock until teardown."""
        factory = open_database(sqlite_busy_timeout=0.2)
        if not _is_sqlite():
            pytest.skip("busy timeout applies to SQLite")
        session = factory()
        session.execute(text("SELECT 1"))  # BEGIN IMMEDIATE takes the write lock
        yield session
        session.rollback()
        session.close()

    @pytest.fixture
    def held_lock(self, holder):
        return get_session_factory()

    def test_reservation_reports_contention(self, held_lock):
        with pytest.raises(SequenceContentionError) as exc_info:
            with session_scope(held_lock) as session:
                LedgerSequenceAllocator(session).reserve_invoice_number()
        assert exc_info.value.code == "SEQUENCE_CONTENDED"

    def test_nothing_reserved_after_contention(self, held_lock, holder):
        with pytest.raises(SequenceContentionError):
            with session_scope(held_lock) as session:
                LedgerSequenceAllocator(session).reserve_invoice_number()
        holder.rollback()
        with held_lock() as session:
            assert LedgerSequenceAllocator(session).next_invoice_number() == 1

    def test_facade_marks_busy_database_retryable(self, held_lock, config, client, clock, make_order):
        result = FiscalEngine(held_lock, config, client, clock).submit_sale(make_order())
        assert result.status.value == "failed"
        assert result.code == "DATABASE_BUSY"
        assert result.data["retryable"] is True
