"""
fiscal_services.catalog_registration -- register catalog items with the Authority.

Responsibility:
    Derives the Authority codes for a product or ingredient (class code,
    tax bracket, unit code), reserves its item code in the unit's
    namespace, sends saveItem, and upserts the catalog row with the codes.

Architecture position:
    Services -- orchestrates the catalog code generator (engine), the
    sequence allocator and submission recorder (kernel), and the client.

Transaction boundaries:
    Tx1  ensure_submittable -> derive codes -> reserve item code -> open
         PENDING record.  Committed before the call.
    --   saveItem
    Tx2  CatalogItem / Ingredient upsert (first attempt) and SUCCESS/ERROR.

Invariants enforced:
    - Item code counters are gap-free per unit namespace under success and
      never reused after a rejection.
    - class code and tax bracket come from the same configuration tables,
      so they always agree.
    - A catalog row that already carries an item code keeps it; codes are
      never reassigned.
    - The submission key is ``<kind>:<item id>``, so a product and an
      ingredient sharing an id are registered separately.

Failure modes:
    - InvalidCatalogItemError before any reservation.
    - AlreadySubmittedError when the entry is already registered.
    - LedgerUnreadableError, SequenceContentionError, SequenceExhaustedError
      from the allocator.
    - AcknowledgementPersistenceError: saveItem accepted but Tx2 failed.
      Carries the item codes and the Authority result for reconciliation.
"""

from __future__ import annotations

import dataclasses
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fiscal_config.schema import FiscalConfiguration
from fiscal_engines.catalog_codes import CatalogCodeGenerator, CatalogCodes
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.db.types import ZERO, to_decimal
from fiscal_kernel.domain.clock import Clock
from fiscal_kernel.domain.dtos import CatalogItemRequest, CatalogKind, SubjectType
from fiscal_kernel.exceptions import AcknowledgementPersistenceError, InvalidCatalogItemError
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.catalog import CatalogItem, Ingredient
from fiscal_kernel.models.submission_record import SubmissionStatus
from fiscal_kernel.services.sequence_service import LedgerSequenceAllocator
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services._submission import Attempt, Reply, SubmissionFlow
from fiscal_services.authority_client import AuthorityClient, AuthorityResponse
from fiscal_services.outcomes import CatalogRegistrationOutcome
from fiscal_services.payloads import build_item_payload

logger = get_logger("services.catalog_registration")

_MODELS: dict[CatalogKind, type[CatalogItem] | type[Ingredient]] = {
    CatalogKind.PRODUCT: CatalogItem,
    CatalogKind.INGREDIENT: Ingredient,
}


def registration_key(kind: CatalogKind, item_id: str) -> str:
    return f"{kind.value}:{item_id}"


class CatalogRegistrationService(SubmissionFlow):
    """
    Registers products and ingredients.

    Usage:
        service = CatalogRegistrationService(factory, config, client)
        outcome = service.register(CatalogItemRequest("sku-9", "Chapati", "bakery", "pcs", Decimal("30")))
        outcome.item_code   # "KE2NTU0000001"
    """

    subject_type = SubjectType.CATALOG_ITEM

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        client: AuthorityClient,
        clock: Clock | None = None,
        generator: CatalogCodeGenerator | None = None,
    ):
        super().__init__(session_factory, config, client, clock)
        self._codes = generator or CatalogCodeGenerator(config.catalog)

    def validate(self, request: CatalogItemRequest) -> list[str]:
        problems: list[str] = []
        if not request.item_id or not str(request.item_id).strip():
            problems.append("item id is required")
        if not request.name or not request.name.strip():
            problems.append("name is required")
        try:
            if to_decimal(request.cost, "cost") < ZERO:
                problems.append("cost must not be negative")
        except (TypeError, ValueError) as exc:
            problems.append(str(exc))
        try:
            CatalogKind(request.kind)
        except ValueError:
            problems.append(f"unknown catalog kind {request.kind!r}")
        return problems

    def register(self, request: CatalogItemRequest) -> CatalogRegistrationOutcome:
        """
        Register ``request`` with the Authority.

        An errored registration for the same item is replayed with its
        stored request, so it keeps its item code.
        """
        problems = self.validate(request)
        if problems:
            raise InvalidCatalogItemError(request.item_id, problems)

        kind = CatalogKind(request.kind)
        request = dataclasses.replace(request, kind=kind, cost=to_decimal(request.cost, "cost"))
        key = registration_key(kind, request.item_id)
        with LogContext.bind(business_key=key, actor_id=request.registrant):
            first_attempt = False
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                existing = recorder.ensure_submittable(self.subject_type, key)
                if existing is not None:
                    record = recorder.reopen(existing)
                else:
                    codes = self._codes.derive(request.category, request.unit)
                    item_code = self._item_code(session, kind, request, codes)
                    payload = build_item_payload(self._config, request, item_code, codes)
                    record = recorder.open(
                        self.subject_type, key, item_code, payload, actor=request.registrant
                    )
                    first_attempt = True
                attempt = Attempt.from_record(record, first_attempt=first_attempt)

            draft = (kind, request) if first_attempt else None
            return self._complete(attempt, draft)

    def _item_code(
        self,
        session: Session,
        kind: CatalogKind,
        request: CatalogItemRequest,
        codes: CatalogCodes,
    ) -> str:
        entry = self._entry(session, kind, request.item_id)
        if entry is not None and entry.item_code:
            logger.info("catalog_item_code_kept", extra={"item_code": entry.item_code})
            return entry.item_code
        allocator = LedgerSequenceAllocator(
            session,
            item_code_prefix=self._config.item_code.prefix,
            counter_width=self._config.item_code.counter_width,
        )
        return allocator.reserve_item_code(codes.unit_code)

    @staticmethod
    def _entry(session: Session, kind: CatalogKind, item_id: str):
        model = _MODELS[kind]
        return session.execute(
            select(model).where(model.external_id == item_id)
        ).scalar_one_or_none()

    def _send(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self._client.save_item(payload)

    def _complete(
        self,
        attempt: Attempt,
        draft: tuple[CatalogKind, CatalogItemRequest] | None,
    ) -> CatalogRegistrationOutcome:
        with LogContext.bind(item_code=attempt.reference_no):
            reply = self._call(attempt)
            outcome = self._record(attempt, draft, reply)
            logger.info(
                "catalog_registration_completed",
                extra={"status": outcome.status.value, "attempt": outcome.attempt_count},
            )
            return outcome

    def _record(
        self,
        attempt: Attempt,
        draft: tuple[CatalogKind, CatalogItemRequest] | None,
        reply: Reply,
    ) -> CatalogRegistrationOutcome:
        """Tx2: write the catalog row (first attempt) and close the record."""
        payload = attempt.payload
        try:
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                record = recorder.get_by_id(attempt.record_id, for_update=True)
                if draft is not None:
                    self._upsert(session, *draft, payload)
                self._close(recorder, record, reply)
                return CatalogRegistrationOutcome(
                    business_key=record.business_key,
                    reference_no=record.reference_no,
                    status=SubmissionStatus(record.status),
                    attempt_count=record.attempt_count,
                    result_code=record.result_code,
                    result_message=record.result_message,
                    error_message=record.error_message,
                    item_code=payload["itemCd"],
                    item_class_code=payload["itemClsCd"],
                    tax_bracket=payload["taxTyCd"],
                    unit_code=payload["qtyUnitCd"],
                )
        except Exception as exc:
            if not reply.accepted:
                raise
            acknowledgement = {
                "itemCd": payload["itemCd"],
                "itemClsCd": payload["itemClsCd"],
                "taxTyCd": payload["taxTyCd"],
                "resultCd": reply.response.result_code,
                "resultDt": reply.response.result_date,
            }
            logger.critical(
                "acknowledgement_not_persisted",
                extra={"reference_no": attempt.reference_no, "acknowledgement": acknowledgement},
                exc_info=True,
            )
            raise AcknowledgementPersistenceError(
                self.subject_type.value,
                attempt.business_key,
                attempt.reference_no,
                acknowledgement,
                exc,
            ) from exc

    @staticmethod
    def _close(recorder: SubmissionRecorder, record, reply: Reply) -> None:
        response = reply.response
        if reply.accepted:
            recorder.record_success(
                record, response.result_code, response.result_message, response.result_date
            )
        else:
            recorder.record_error(
                record,
                reply.rejection_reason(),
                result_code=response.result_code if response else None,
                result_message=response.result_message if response else None,
                result_date=response.result_date if response else None,
            )

    def _upsert(
        self,
        session: Session,
        kind: CatalogKind,
        request: CatalogItemRequest,
        payload: dict[str, Any],
    ) -> None:
        """Write the Authority codes onto the catalog row, creating it if needed."""
        entry = self._entry(session, kind, request.item_id)
        if entry is None:
            entry = _MODELS[kind](external_id=request.item_id, item_code=payload["itemCd"])
            session.add(entry)
        entry.name = request.name
        entry.category = request.category
        entry.unit = request.unit
        entry.unit_code = payload["qtyUnitCd"]
        entry.cost = to_decimal(request.cost, "cost")
        entry.item_class_code = payload["itemClsCd"]
        entry.tax_bracket = payload["taxTyCd"]
        entry.created_by = entry.created_by or request.registrant
        session.flush()
