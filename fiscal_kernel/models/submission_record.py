"""
Module: fiscal_kernel.models.submission_record
Responsibility: ORM persistence for the outcome of sending one sale or one
    catalog item to the Authority.
Architecture position: Kernel > Models.  May import from db/base.py and
    kernel domain/exceptions only.

Invariants enforced:
    - One record per (subject_type, business_key)
      (UNIQUE constraint uq_submission_subject_key).  The constraint also
      stops two concurrent callers from both opening a first attempt.
    - Status changes follow VALID_TRANSITIONS:
          PENDING -> SUCCESS | ERROR
          ERROR   -> PENDING            (caller-triggered retry)
          SUCCESS: terminal
    - reference_no (invoice number or item code) is written once, when the
      record is opened, and reused by every retry.
    - request_payload is the exact body sent to the Authority and is what a
      retry replays; it is never rebuilt.
    - Acknowledgement columns are immutable once status is SUCCESS
      (db/immutability.py).

Failure modes:
    - IntegrityError on duplicate (subject_type, business_key).
    - InvalidSubmissionTransitionError on a transition outside the map.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase
from fiscal_kernel.domain.dtos import AuthorityAcknowledgement, SubjectType
from fiscal_kernel.exceptions import InvalidSubmissionTransitionError


class SubmissionStatus(str, Enum):
    """
    Lifecycle of one submission.

    A business key with no record is "not submitted".
    """

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


VALID_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({
        SubmissionStatus.SUCCESS, SubmissionStatus.ERROR,
    }),
    SubmissionStatus.ERROR: frozenset({SubmissionStatus.PENDING}),
    SubmissionStatus.SUCCESS: frozenset(),
}

# Columns copied from the Authority acknowledgement.
ACKNOWLEDGEMENT_COLUMNS: tuple[str, ...] = (
    "receipt_counter",
    "total_receipt_counter",
    "internal_data",
    "signature",
    "confirmed_at_token",
    "device_id",
)


class SubmissionRecord(TrackedBase):
    """
    Persisted submission outcome for one business key.

    Only SubmissionRecorder changes ``status``.
    """

    __tablename__ = "submission_records"

    __table_args__ = (
        UniqueConstraint("subject_type", "business_key", name="uq_submission_subject_key"),
        Index("idx_submission_status", "subject_type", "status"),
        Index("idx_submission_reference", "subject_type", "reference_no"),
    )

    subject_type: Mapped[SubjectType] = mapped_column(String(20), nullable=False)

    business_key: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[SubmissionStatus] = mapped_column(String(10), nullable=False)

    # Invoice number (sales) or item code (catalog items)
    reference_no: Mapped[str] = mapped_column(String(30), nullable=False)

    request_payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Last Authority answer (absent after a transport failure)
    result_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    result_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_date: Mapped[str | None] = mapped_column(String(14), nullable=True)

    # Human-readable reason of the last failure
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    succeeded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # --- Acknowledgement (sales only) ---

    receipt_counter: Mapped[int | None] = mapped_column(nullable=True)
    total_receipt_counter: Mapped[int | None] = mapped_column(nullable=True)
    internal_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at_token: Mapped[str | None] = mapped_column(String(14), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[SubmissionStatus(self.status)]

    def can_transition_to(self, new_status: SubmissionStatus) -> bool:
        return new_status in VALID_TRANSITIONS[SubmissionStatus(self.status)]

    def validate_transition(self, new_status: SubmissionStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidSubmissionTransitionError(
                self.business_key,
                SubmissionStatus(self.status).value,
                new_status.value,
            )

    @property
    def acknowledgement(self) -> AuthorityAcknowledgement | None:
        if self.status != SubmissionStatus.SUCCESS or self.signature is None:
            return None
        return AuthorityAcknowledgement(
            receipt_counter=self.receipt_counter,
            total_receipt_counter=self.total_receipt_counter,
            internal_data=self.internal_data or "",
            signature=self.signature,
            confirmed_at=self.confirmed_at_token or "",
            device_id=self.device_id,
        )

    def __repr__(self) -> str:
        return (
            f"<SubmissionRecord {self.subject_type}:{self.business_key} "
            f"{self.reference_no} [{self.status}]>"
        )
