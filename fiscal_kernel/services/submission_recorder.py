"""
SubmissionRecorder -- the only writer of SubmissionRecord.status.

Responsibility:
    Opens, reopens and closes submission records, enforcing the state
    machine in VALID_TRANSITIONS:

        (none) --open--> PENDING --record_success--> SUCCESS
                            |
                            +--record_error--> ERROR --reopen--> PENDING

Architecture position:
    Kernel > Services -- imperative shell.  Called by the sale submission,
    catalog registration and retry services.  Never commits; the caller
    owns the transaction boundary.

Invariants enforced:
    - At most one successful submission per (subject_type, business_key):
      ``ensure_submittable`` refuses SUCCESS keys with AlreadySubmittedError.
    - One in-flight attempt per key: PENDING keys are refused with
      SubmissionInProgressError, and the unique constraint turns a
      concurrent ``open`` into the same error.
    - A reopened record keeps its reference_no and request_payload.

Failure modes:
    - AlreadySubmittedError, SubmissionInProgressError,
      InvalidSubmissionTransitionError.

Audit relevance:
    Every transition is logged with subject, key, reference, attempt count
    and result code.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import AuthorityAcknowledgement, SubjectType
from fiscal_kernel.exceptions import AlreadySubmittedError, SubmissionInProgressError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.submission_record import SubmissionRecord, SubmissionStatus

logger = get_logger("services.submission_recorder")


class SubmissionRecorder:
    """
    Persists submission lifecycle transitions.

    Usage:
        recorder = SubmissionRecorder(session, clock)
        existing = recorder.ensure_submittable(SubjectType.SALE, "order-17")
        record = recorder.reopen(existing) if existing else recorder.open(...)
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(
        self,
        subject_type: SubjectType,
        business_key: str,
        for_update: bool = False,
    ) -> SubmissionRecord | None:
        stmt = select(SubmissionRecord).where(
            SubmissionRecord.subject_type == subject_type.value,
            SubmissionRecord.business_key == business_key,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def get_by_id(self, record_id: UUID, for_update: bool = False) -> SubmissionRecord | None:
        stmt = select(SubmissionRecord).where(SubmissionRecord.id == record_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def has_succeeded(self, subject_type: SubjectType, business_key: str) -> bool:
        record = self.get(subject_type, business_key)
        return record is not None and record.status == SubmissionStatus.SUCCESS

    def query_errors(
        self,
        subject_type: SubjectType | None = None,
        limit: int | None = None,
    ) -> list[SubmissionRecord]:
        """ERROR records, oldest first."""
        stmt = select(SubmissionRecord).where(
            SubmissionRecord.status == SubmissionStatus.ERROR.value
        )
        if subject_type is not None:
            stmt = stmt.where(SubmissionRecord.subject_type == subject_type.value)
        stmt = stmt.order_by(SubmissionRecord.created_at, SubmissionRecord.business_key)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def ensure_submittable(
        self,
        subject_type: SubjectType,
        business_key: str,
    ) -> SubmissionRecord | None:
        """
        Lock and return the errored record for a key, or None if unseen.

        Raises:
            AlreadySubmittedError: the key already succeeded.
            SubmissionInProgressError: the key has a pending attempt.
        """
        record = self.get(subject_type, business_key, for_update=True)
        if record is None:
            return None
        if record.status == SubmissionStatus.SUCCESS:
            logger.warning(
                "duplicate_submission_refused",
                extra={
                    "subject_type": subject_type.value,
                    "business_key": business_key,
                    "reference_no": record.reference_no,
                },
            )
            raise AlreadySubmittedError(subject_type.value, business_key, record.reference_no)
        if record.status == SubmissionStatus.PENDING:
            raise SubmissionInProgressError(subject_type.value, business_key)
        return record

    def open(
        self,
        subject_type: SubjectType,
        business_key: str,
        reference_no: str,
        payload: dict[str, Any],
        actor: str | None = None,
    ) -> SubmissionRecord:
        """Create the first PENDING record for a key."""
        record = SubmissionRecord(
            subject_type=subject_type.value,
            business_key=business_key,
            status=SubmissionStatus.PENDING.value,
            reference_no=reference_no,
            request_payload=payload,
            attempt_count=1,
            last_attempt_at=self._clock.now_utc(),
            created_by=actor,
        )
        savepoint = self._session.begin_nested()
        try:
            self._session.add(record)
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise SubmissionInProgressError(subject_type.value, business_key)

        logger.info(
            "submission_opened",
            extra={
                "subject_type": subject_type.value,
                "business_key": business_key,
                "reference_no": reference_no,
            },
        )
        return record

    def reopen(self, record: SubmissionRecord) -> SubmissionRecord:
        """ERROR -> PENDING for a retry.  Reference and payload are kept."""
        record.validate_transition(SubmissionStatus.PENDING)
        record.status = SubmissionStatus.PENDING.value
        record.attempt_count += 1
        record.last_attempt_at = self._clock.now_utc()
        self._session.flush()
        logger.info(
            "submission_reopened",
            extra={
                "subject_type": record.subject_type,
                "business_key": record.business_key,
                "reference_no": record.reference_no,
                "attempt": record.attempt_count,
            },
        )
        return record

    def record_success(
        self,
        record: SubmissionRecord,
        result_code: str,
        result_message: str | None,
        result_date: str | None,
        acknowledgement: AuthorityAcknowledgement | None = None,
    ) -> SubmissionRecord:
        """PENDING -> SUCCESS, storing the acknowledgement verbatim."""
        record.validate_transition(SubmissionStatus.SUCCESS)
        record.status = SubmissionStatus.SUCCESS.value
        record.result_code = result_code
        record.result_message = result_message
        record.result_date = result_date
        record.error_message = None
        record.succeeded_at = self._clock.now_utc()
        if acknowledgement is not None:
            record.receipt_counter = acknowledgement.receipt_counter
            record.total_receipt_counter = acknowledgement.total_receipt_counter
            record.internal_data = acknowledgement.internal_data
            record.signature = acknowledgement.signature
            record.confirmed_at_token = acknowledgement.confirmed_at
            record.device_id = acknowledgement.device_id
        self._session.flush()
        logger.info(
            "submission_succeeded",
            extra={
                "subject_type": record.subject_type,
                "business_key": record.business_key,
                "reference_no": record.reference_no,
                "attempt": record.attempt_count,
                "receipt_counter": record.receipt_counter,
            },
        )
        return record

    def record_error(
        self,
        record: SubmissionRecord,
        reason: str,
        result_code: str | None = None,
        result_message: str | None = None,
        result_date: str | None = None,
    ) -> SubmissionRecord:
        """PENDING -> ERROR.  The record stays eligible for retry."""
        record.validate_transition(SubmissionStatus.ERROR)
        record.status = SubmissionStatus.ERROR.value
        record.result_code = result_code
        record.result_message = result_message
        record.result_date = result_date
        record.error_message = reason
        self._session.flush()
        logger.warning(
            "submission_failed",
            extra={
                "subject_type": record.subject_type,
                "business_key": record.business_key,
                "reference_no": record.reference_no,
                "attempt": record.attempt_count,
                "result_code": result_code,
                "reason": reason,
            },
        )
        return record
