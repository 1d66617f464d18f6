"""
fiscal_services.submission_retry -- caller-triggered replay of errored submissions.

Scans ERROR records (sales, purchases and catalog items, oldest first) and replays
each stored request through the flow that owns its subject type.  Nothing
is recomputed: the invoice number, item code and amounts sent are the
ones stored on the first attempt.

Records that have used up ``submission.max_attempts`` are skipped and left
in ERROR for an operator.  A record another caller reopened in the
meantime is skipped too.

AcknowledgementPersistenceError is not caught: the batch stops so the
acknowledgement reaches an operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from fiscal_config.schema import FiscalConfiguration
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.domain.dtos import SubjectType
from fiscal_kernel.exceptions import InvalidSubmissionTransitionError, SubmissionNotFoundError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services._submission import SubmissionFlow
from fiscal_services.outcomes import RetrySummary, SubmissionOutcome

logger = get_logger("services.submission_retry")


@dataclass(frozen=True)
class _Candidate:
    record_id: UUID
    subject_type: SubjectType
    business_key: str
    attempt_count: int


class SubmissionRetryService:
    """
    Replays errored submissions.

    Usage:
        retry = SubmissionRetryService(factory, config, [sales, catalog, purchases])
        summary = retry.retry_failed(limit=50)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        flows: list[SubmissionFlow],
    ):
        self._factory = session_factory
        self._max_attempts = config.submission.max_attempts
        self._flows = {flow.subject_type: flow for flow in flows}

    def _candidates(self) -> list[_Candidate]:
        with session_scope(self._factory) as session:
            return [
                _Candidate(
                    record_id=record.id,
                    subject_type=SubjectType(record.subject_type),
                    business_key=record.business_key,
                    attempt_count=record.attempt_count,
                )
                for record in SubmissionRecorder(session).query_errors()
                if SubjectType(record.subject_type) in self._flows
            ]

    def retry_failed(self, limit: int | None = None) -> RetrySummary:
        """Replay up to ``limit`` errored submissions (all when None)."""
        retried = succeeded = failed = skipped = 0
        outcomes: list[SubmissionOutcome] = []

        for candidate in self._candidates():
            if limit is not None and retried >= limit:
                break
            if candidate.attempt_count >= self._max_attempts:
                skipped += 1
                logger.warning(
                    "retry_skipped_max_attempts",
                    extra={
                        "subject_type": candidate.subject_type.value,
                        "business_key": candidate.business_key,
                        "attempt": candidate.attempt_count,
                    },
                )
                continue

            flow = self._flows[candidate.subject_type]
            try:
                outcome = flow.resubmit(candidate.record_id)
            except (InvalidSubmissionTransitionError, SubmissionNotFoundError):
                skipped += 1
                logger.info(
                    "retry_skipped_concurrent",
                    extra={"business_key": candidate.business_key},
                )
                continue

            retried += 1
            outcomes.append(outcome)
            if outcome.succeeded:
                succeeded += 1
            else:
                failed += 1

        summary = RetrySummary(
            retried_count=retried,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            outcomes=tuple(outcomes),
        )
        logger.info(
            "retry_batch_completed",
            extra={
                "retried_count": retried,
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
            },
        )
        return summary
