"""
Shared skeleton of the submission flows (sales, purchases, catalog items).

Every flow runs the same three steps:

    Tx1   lock the key, reserve numbers, store the request as PENDING, commit
    call  one Authority request, outside any transaction
    Tx2   record SUCCESS or ERROR (plus the business rows on first attempt)

``resubmit`` is the replay entry point used by the retry service: it
reopens an ERROR record and sends its stored request unchanged.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from fiscal_config.schema import FiscalConfiguration
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import SubjectType
from fiscal_kernel.exceptions import AuthorityTransportError, SubmissionNotFoundError
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.submission_record import SubmissionRecord
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services.authority_client import AuthorityClient, AuthorityResponse
from fiscal_services.outcomes import SubmissionOutcome

logger = get_logger("services.submission")


@dataclass(frozen=True)
class Attempt:
    """A committed PENDING record, detached from its session."""

    record_id: UUID
    business_key: str
    reference_no: str
    payload: dict[str, Any]
    attempt_count: int
    first_attempt: bool

    @classmethod
    def from_record(cls, record: SubmissionRecord, first_attempt: bool) -> Attempt:
        return cls(
            record_id=record.id,
            business_key=record.business_key,
            reference_no=record.reference_no,
            payload=dict(record.request_payload),
            attempt_count=record.attempt_count,
            first_attempt=first_attempt,
        )


@dataclass(frozen=True)
class Reply:
    """The Authority's answer, or why there was none."""

    response: AuthorityResponse | None
    transport_error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.response is not None and self.response.accepted

    def rejection_reason(self) -> str:
        if self.response is None:
            return self.transport_error or "no response from the Authority"
        return (
            f"Authority rejected with {self.response.result_code}: "
            f"{self.response.result_message or 'no message'}"
        )


class SubmissionFlow(ABC):
    """Base for services that own one subject type's submissions."""

    subject_type: SubjectType

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        client: AuthorityClient,
        clock: Clock | None = None,
    ):
        self._factory = session_factory
        self._config = config
        self._client = client
        self._clock = clock or SystemClock()

    def resubmit(self, record_id: UUID) -> SubmissionOutcome:
        """
        Replay the stored request of an ERROR record.

        Raises:
            SubmissionNotFoundError: no record with that id.
            InvalidSubmissionTransitionError: the record is not in ERROR.
        """
        with session_scope(self._factory) as session:
            recorder = SubmissionRecorder(session, self._clock)
            record = recorder.get_by_id(record_id, for_update=True)
            if record is None:
                raise SubmissionNotFoundError(self.subject_type.value, str(record_id))
            recorder.reopen(record)
            attempt = Attempt.from_record(record, first_attempt=False)

        with LogContext.bind(business_key=attempt.business_key):
            return self._complete(attempt, draft=None)

    def _call(self, attempt: Attempt) -> Reply:
        try:
            return Reply(self._send(attempt.payload))
        except AuthorityTransportError as exc:
            return Reply(None, transport_error=str(exc))

    @abstractmethod
    def _send(self, payload: dict[str, Any]) -> AuthorityResponse:
        """One Authority request for this subject type."""

    @abstractmethod
    def _complete(self, attempt: Attempt, draft: Any) -> SubmissionOutcome:
        """Call the Authority and record the outcome (Tx2 onwards)."""
