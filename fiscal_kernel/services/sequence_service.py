"""
Sequence allocation for invoice numbers, purchase numbers and unit-scoped
item codes.

Responsibility:
    Hands out invoice numbers and ``<prefix><UNIT><counter>`` item codes
    that are never issued twice.  Two kinds of call:

    * ``next_invoice_number`` / ``next_item_code`` -- read-only previews.
      Nothing is consumed; calling twice returns the same value.
    * ``reserve_invoice_number`` / ``reserve_purchase_number`` /
      ``reserve_item_code`` -- atomic
      read-increment-write on a per-namespace counter row, locked with
      ``SELECT ... FOR UPDATE``.  The counter is floored at the ledger
      maximum, so codes written by other paths (imports, older releases)
      are never re-issued.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Called by the
    sale submission and catalog registration services.  ``SequenceAllocator``
    is the seam: a storage layer with its own atomic increment can supply
    a different implementation.

Invariants enforced:
    - Uniqueness: a reserved value is strictly greater than every value
      previously reserved or stored in the namespace.
    - Gap-free under success: consecutive reservations in a namespace
      differ by exactly one.
    - No guessing: a failed ledger read raises LedgerUnreadableError; the
      allocator never falls back to 1.
    - Burn on rejection: reservations are committed before the Authority
      is called and are not returned when the call fails.  The errored
      record keeps its number and every retry reuses it.

Failure modes:
    - LedgerUnreadableError: the max scan or counter lock failed.
    - SequenceContentionError: the counter lock was not granted in time.
      Nothing was reserved; the caller may try again.
    - SequenceExhaustedError: the counter no longer fits its digits.
    - IntegrityError during counter creation: handled via savepoint and
      retry.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import InstrumentedAttribute, Session

from fiscal_kernel.db.engine import is_lock_timeout
from fiscal_kernel.exceptions import (
    LedgerUnreadableError,
    SequenceContentionError,
    SequenceExhaustedError,
)
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.catalog import CatalogItem, Ingredient
from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
from fiscal_kernel.models.sales_invoice import SalesInvoice
from fiscal_kernel.models.sequence_counter import SequenceCounter

logger = get_logger("services.sequence")

INVOICE_NAMESPACE = "invoice"
PURCHASE_NAMESPACE = "purchase"

_UNIT_CODE = re.compile(r"[0-9A-Z]{1,3}")


def item_code_namespace(unit_code: str) -> str:
    return f"item_code:{unit_code}"


def default_item_code_sources() -> tuple[InstrumentedAttribute, ...]:
    """Every column that can hold an issued item code."""
    return (CatalogItem.item_code, Ingredient.item_code)


class SequenceAllocator(ABC):
    """Contract for invoice-number and item-code allocation."""

    @abstractmethod
    def next_invoice_number(self) -> int:
        """Preview the next invoice number without consuming it."""

    @abstractmethod
    def next_item_code(self, unit_code: str) -> str:
        """Preview the next item code for ``unit_code`` without consuming it."""

    @abstractmethod
    def reserve_invoice_number(self) -> int:
        """Consume and return the next invoice number."""

    @abstractmethod
    def reserve_item_code(self, unit_code: str) -> str:
        """Consume and return the next item code for ``unit_code``."""

    @abstractmethod
    def reserve_purchase_number(self) -> int:
        """Consume and return the next purchase number."""


class LedgerSequenceAllocator(SequenceAllocator):
    """
    SequenceAllocator backed by SQL counter rows plus a ledger scan.

    Contract:
        Reservations flush but never commit; the caller's transaction
        boundary decides when a reservation becomes durable.  The sale and
        registration flows commit it before calling the Authority.

    Usage:
        with session_scope(factory) as session:
            invoice_no = LedgerSequenceAllocator(session, "KE2NT").reserve_invoice_number()
    """

    def __init__(
        self,
        session: Session,
        item_code_prefix: str = "KE2NT",
        counter_width: int = 7,
        code_sources: Sequence[InstrumentedAttribute] | None = None,
        invoice_source: InstrumentedAttribute | None = None,
        purchase_source: InstrumentedAttribute | None = None,
    ):
        self._session = session
        self._prefix = item_code_prefix
        self._width = counter_width
        self._code_sources = (
            tuple(code_sources) if code_sources is not None else default_item_code_sources()
        )
        self._invoice_source = (
            invoice_source if invoice_source is not None else SalesInvoice.invoice_no
        )
        self._purchase_source = (
            purchase_source if purchase_source is not None else PurchaseInvoice.purchase_no
        )

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_item_code(self, unit_code: str, counter: int) -> str:
        if counter >= 10 ** self._width:
            raise SequenceExhaustedError(item_code_namespace(unit_code), counter)
        return f"{self._prefix}{unit_code}{counter:0{self._width}d}"

    def _pattern(self, unit_code: str) -> re.Pattern[str]:
        # Full match, so "L" never reads the counter of an "LTR" code.
        return re.compile(
            rf"{re.escape(self._prefix)}{re.escape(unit_code)}([0-9]{{{self._width}}})"
        )

    @staticmethod
    def _check_unit(unit_code: str) -> None:
        if not isinstance(unit_code, str) or not _UNIT_CODE.fullmatch(unit_code):
            raise ValueError(f"Unit code must be normalized before allocation: {unit_code!r}")

    # ------------------------------------------------------------------
    # Previews
    # ------------------------------------------------------------------

    def next_invoice_number(self) -> int:
        floor = self._read(INVOICE_NAMESPACE, self._max_invoice_no)
        counter = self._read(INVOICE_NAMESPACE, lambda: self._counter_value(INVOICE_NAMESPACE))
        return max(floor, counter) + 1

    def next_item_code(self, unit_code: str) -> str:
        self._check_unit(unit_code)
        namespace = item_code_namespace(unit_code)
        floor = self._read(namespace, lambda: self._max_item_counter(unit_code))
        counter = self._read(namespace, lambda: self._counter_value(namespace))
        return self.format_item_code(unit_code, max(floor, counter) + 1)

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve_invoice_number(self) -> int:
        return self._reserve(INVOICE_NAMESPACE, self._max_invoice_no)

    def reserve_item_code(self, unit_code: str) -> str:
        self._check_unit(unit_code)
        namespace = item_code_namespace(unit_code)
        value = self._reserve(namespace, lambda: self._max_item_counter(unit_code))
        return self.format_item_code(unit_code, value)

    def reserve_purchase_number(self) -> int:
        return self._reserve(PURCHASE_NAMESPACE, self._max_purchase_no)

    def _reserve(self, namespace: str, ledger_max: Callable[[], int]) -> int:
        try:
            counter = self._lock_counter(namespace)
            # Scan after the lock so a concurrent writer cannot slip in between.
            floor = ledger_max()
            value = max(counter.current_value, floor) + 1
            counter.current_value = value
            self._session.flush()
        except SQLAlchemyError as exc:
            self._raise_if_contended(namespace, exc)
            logger.error(
                "sequence_reservation_failed",
                extra={"sequence_name": namespace},
                exc_info=True,
            )
            raise LedgerUnreadableError(namespace, str(exc)) from exc

        logger.info(
            "sequence_reserved",
            extra={"sequence_name": namespace, "value": value, "ledger_floor": floor},
        )
        return value

    # ------------------------------------------------------------------
    # Ledger access
    # ------------------------------------------------------------------

    def _read(self, namespace: str, reader: Callable[[], int]) -> int:
        try:
            return reader()
        except SQLAlchemyError as exc:
            self._raise_if_contended(namespace, exc)
            logger.error(
                "sequence_ledger_unreadable",
                extra={"sequence_name": namespace},
                exc_info=True,
            )
            raise LedgerUnreadableError(namespace, str(exc)) from exc

    @staticmethod
    def _raise_if_contended(namespace: str, exc: SQLAlchemyError) -> None:
        if is_lock_timeout(exc):
            logger.warning(
                "sequence_contended",
                extra={"sequence_name": namespace, "reason": str(exc.orig)},
            )
            raise SequenceContentionError(namespace, str(exc.orig)) from exc

    def _max_invoice_no(self) -> int:
        result = self._session.execute(select(func.max(self._invoice_source))).scalar()
        return int(result or 0)

    def _max_purchase_no(self) -> int:
        result = self._session.execute(select(func.max(self._purchase_source))).scalar()
        return int(result or 0)

    def _max_item_counter(self, unit_code: str) -> int:
        pattern = self._pattern(unit_code)
        like = f"{self._prefix}{unit_code}%"
        highest = 0
        for column in self._code_sources:
            codes = self._session.execute(select(column).where(column.like(like))).scalars()
            for code in codes:
                match = pattern.fullmatch(code or "")
                if match:
                    highest = max(highest, int(match.group(1)))
        return highest

    def _counter_value(self, namespace: str) -> int:
        value = self._session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == namespace)
        ).scalar_one_or_none()
        return int(value or 0)

    def _lock_counter(self, namespace: str) -> SequenceCounter:
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == namespace)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if counter is not None:
            return counter

        # First use of the namespace.  Another transaction may be creating
        # the same row; the savepoint keeps the caller's work intact.
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=namespace, current_value=0)
            self._session.add(counter)
            self._session.flush()
            savepoint.commit()
            return counter
        except IntegrityError:
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": namespace})
            savepoint.rollback()
            return self._session.execute(
                select(SequenceCounter)
                .where(SequenceCounter.name == namespace)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
