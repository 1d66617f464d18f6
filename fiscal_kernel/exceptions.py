"""
Typed exception hierarchy for the fiscal engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from FiscalEngineError:

    FiscalEngineError (base)
    |
    +-- ValidationError
    |   +-- InvalidSaleError
    |   +-- InvalidCatalogItemError
    |   +-- InvalidPurchaseError
    |
    +-- ConfigurationError
    |
    +-- AllocationError
    |   +-- LedgerUnreadableError
    |   +-- SequenceContentionError
    |   +-- SequenceExhaustedError
    |
    +-- SubmissionError
    |   +-- AlreadySubmittedError
    |   +-- SubmissionInProgressError
    |   +-- SubmissionNotFoundError
    |   +-- InvalidSubmissionTransitionError
    |   +-- AcknowledgementPersistenceError
    |
    +-- AuthorityError
    |   +-- AuthorityTransportError
    |   +-- AuthorityProtocolError
    |
    +-- ReceiptError
    |   +-- InvalidAuthorityTimestampError
    |   +-- ReceiptNotAvailableError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | INVALID_SALE                  | Sale order rejected before allocation
                | INVALID_CATALOG_ITEM          | Registration request rejected
                | INVALID_PURCHASE              | Purchase rejected before allocation
----------------|-------------------------------|---------------------------------------
Configuration   | CONFIGURATION_INVALID         | Lookup tables inconsistent
----------------|-------------------------------|---------------------------------------
Allocation      | LEDGER_UNREADABLE             | Max-sequence scan failed
                | SEQUENCE_CONTENDED            | Counter lock not granted in time
                | SEQUENCE_EXHAUSTED            | Counter outgrew its digits
----------------|-------------------------------|---------------------------------------
Submission      | ALREADY_SUBMITTED             | Business key already succeeded
                | SUBMISSION_IN_PROGRESS        | Business key is pending
                | SUBMISSION_NOT_FOUND          | No record for business key
                | INVALID_SUBMISSION_TRANSITION | Status change not in state machine
                | ACKNOWLEDGEMENT_NOT_PERSISTED | Authority accepted, local write failed
----------------|-------------------------------|---------------------------------------
Authority       | AUTHORITY_TRANSPORT_FAILURE   | Timeout, connection, HTTP status, body
                | AUTHORITY_PROTOCOL_VIOLATION  | Accepted response missing fields
----------------|-------------------------------|---------------------------------------
Receipt         | INVALID_AUTHORITY_TIMESTAMP   | Token is not YYYYMMDDHHMMSS
                | RECEIPT_NOT_AVAILABLE         | Sale has no successful submission
----------------|-------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | Stored acknowledgement modified

Business rejections (result code other than "000") are NOT exceptions: they
are outcomes, persisted on the submission record and returned to the caller.
"""

from __future__ import annotations

from typing import Any


class FiscalEngineError(Exception):
    """
    Base exception for all fiscal engine errors.

    Every subclass has a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "FISCAL_ENGINE_ERROR"


# Validation


class ValidationError(FiscalEngineError):
    """Input rejected before any sequence allocation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: list[str] | None = None):
        self.field_errors = list(field_errors or [])
        super().__init__(message)


class InvalidSaleError(ValidationError):
    """Sale order is incomplete or numerically invalid."""

    code: str = "INVALID_SALE"

    def __init__(self, business_key: str | None, field_errors: list[str]):
        self.business_key = business_key
        super().__init__(
            f"Invalid sale {business_key!r}: {'; '.join(field_errors)}",
            field_errors,
        )


class InvalidCatalogItemError(ValidationError):
    """Catalog registration request is incomplete."""

    code: str = "INVALID_CATALOG_ITEM"

    def __init__(self, item_id: str | None, field_errors: list[str]):
        self.item_id = item_id
        super().__init__(
            f"Invalid catalog item {item_id!r}: {'; '.join(field_errors)}",
            field_errors,
        )


class InvalidPurchaseError(ValidationError):
    """Purchase is incomplete or numerically invalid."""

    code: str = "INVALID_PURCHASE"

    def __init__(self, business_key: str | None, field_errors: list[str]):
        self.business_key = business_key
        super().__init__(
            f"Invalid purchase {business_key!r}: {'; '.join(field_errors)}",
            field_errors,
        )


# Configuration


class ConfigurationError(FiscalEngineError):
    """Fiscal configuration tables failed validation."""

    code: str = "CONFIGURATION_INVALID"

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__(
            f"Fiscal configuration invalid ({len(problems)} problem(s)): "
            + "; ".join(problems)
        )


# Allocation


class AllocationError(FiscalEngineError):
    """Base exception for sequence allocation errors."""

    code: str = "ALLOCATION_ERROR"


class LedgerUnreadableError(AllocationError):
    """
    The ledger could not be read while allocating a sequence value.

    Raised instead of guessing a starting value, which would risk issuing a
    number that already exists.
    """

    code: str = "LEDGER_UNREADABLE"

    def __init__(self, namespace: str, reason: str):
        self.namespace = namespace
        self.reason = reason
        super().__init__(f"Cannot read ledger for sequence {namespace}: {reason}")


class SequenceContentionError(AllocationError):
    """
    Another transaction held the counter lock past the wait limit.

    Nothing was reserved and nothing is wrong with the ledger; the caller
    may submit again.
    """

    code: str = "SEQUENCE_CONTENDED"

    def __init__(self, namespace: str, reason: str):
        self.namespace = namespace
        self.reason = reason
        super().__init__(f"Sequence {namespace} is locked by another transaction: {reason}")


class SequenceExhaustedError(AllocationError):
    """The next counter value no longer fits the fixed digit width."""

    code: str = "SEQUENCE_EXHAUSTED"

    def __init__(self, namespace: str, value: int):
        self.namespace = namespace
        self.value = value
        super().__init__(f"Sequence {namespace} exhausted at {value}")


# Submission lifecycle


class SubmissionError(FiscalEngineError):
    """Base exception for submission lifecycle errors."""

    code: str = "SUBMISSION_ERROR"


class AlreadySubmittedError(SubmissionError):
    """The business key already has a successful submission."""

    code: str = "ALREADY_SUBMITTED"

    def __init__(self, subject_type: str, business_key: str, reference_no: str | None):
        self.subject_type = subject_type
        self.business_key = business_key
        self.reference_no = reference_no
        super().__init__(
            f"{subject_type} {business_key} already accepted by the Authority "
            f"as {reference_no}"
        )


class SubmissionInProgressError(SubmissionError):
    """Another caller holds a pending submission for the business key."""

    code: str = "SUBMISSION_IN_PROGRESS"

    def __init__(self, subject_type: str, business_key: str):
        self.subject_type = subject_type
        self.business_key = business_key
        super().__init__(f"{subject_type} {business_key} has a pending submission")


class SubmissionNotFoundError(SubmissionError):
    code: str = "SUBMISSION_NOT_FOUND"

    def __init__(self, subject_type: str, business_key: str):
        self.subject_type = subject_type
        self.business_key = business_key
        super().__init__(f"No submission record for {subject_type} {business_key}")


class InvalidSubmissionTransitionError(SubmissionError):
    """Requested status change is not allowed by the state machine."""

    code: str = "INVALID_SUBMISSION_TRANSITION"

    def __init__(self, business_key: str, from_status: str, to_status: str):
        self.business_key = business_key
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid submission transition for {business_key}: "
            f"{from_status} -> {to_status}"
        )


class AcknowledgementPersistenceError(SubmissionError):
    """
    The Authority accepted the transaction but the local write failed.

    Carries the acknowledgement verbatim so an operator can reconcile the
    ledger by hand. Never swallowed.
    """

    code: str = "ACKNOWLEDGEMENT_NOT_PERSISTED"

    def __init__(
        self,
        subject_type: str,
        business_key: str,
        reference_no: str,
        acknowledgement: dict[str, Any],
        cause: BaseException,
    ):
        self.subject_type = subject_type
        self.business_key = business_key
        self.reference_no = reference_no
        self.acknowledgement = acknowledgement
        self.cause = f"{type(cause).__name__}: {cause}"
        super().__init__(
            f"Authority accepted {subject_type} {business_key} ({reference_no}) "
            f"but the acknowledgement could not be stored: {self.cause}"
        )


# Authority transport


class AuthorityError(FiscalEngineError):
    """Base exception for Authority communication errors."""

    code: str = "AUTHORITY_ERROR"


class AuthorityTransportError(AuthorityError):
    """No usable response from the Authority (timeout, network, HTTP, body)."""

    code: str = "AUTHORITY_TRANSPORT_FAILURE"

    def __init__(self, endpoint: str, reason: str, status_code: int | None = None):
        self.endpoint = endpoint
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Authority call {endpoint} failed: {reason}")


class AuthorityProtocolError(AuthorityError):
    """Accepted response is missing fields the protocol requires."""

    code: str = "AUTHORITY_PROTOCOL_VIOLATION"

    def __init__(self, endpoint: str, missing_fields: list[str]):
        self.endpoint = endpoint
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Authority response from {endpoint} is missing: "
            + ", ".join(missing_fields)
        )


# Receipts


class ReceiptError(FiscalEngineError):
    """Base exception for receipt rendering errors."""

    code: str = "RECEIPT_ERROR"


class InvalidAuthorityTimestampError(ReceiptError):
    code: str = "INVALID_AUTHORITY_TIMESTAMP"

    def __init__(self, token: Any, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Invalid Authority timestamp {token!r}: {reason}")


class ReceiptNotAvailableError(ReceiptError):
    """Receipts exist only for sales the Authority accepted."""

    code: str = "RECEIPT_NOT_AVAILABLE"

    def __init__(self, business_key: str, status: str | None):
        self.business_key = business_key
        self.status = status
        super().__init__(
            f"No receipt for sale {business_key}: submission status is {status}"
        )


# Immutability


class ImmutabilityViolationError(FiscalEngineError):
    """Attempt to modify or delete a record the Authority has acknowledged."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
