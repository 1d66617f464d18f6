"""
ORM-level immutability enforcement.

Records the Authority has acknowledged must not change underneath the
receipts already printed from them.  SQLAlchemy fires ``before_update`` and
``before_delete`` before any SQL is emitted; the listeners here raise
ImmutabilityViolationError and the flush is aborted.

Protected entities:

Entity             | When immutable            | What is frozen
-------------------|---------------------------|-------------------------------------
SubmissionRecord   | once status is SUCCESS    | every column except updated_at
SubmissionRecord   | always                    | deletion
SalesInvoice(Line) | always                    | deletion
PurchaseInvoice    | always                    | deletion
CatalogItem        | always                    | deletion, item code once assigned
Ingredient         | always                    | deletion, item code once assigned

The PENDING -> SUCCESS transition itself is allowed: the check looks at
the status the row had *before* this flush.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from fiscal_kernel.exceptions import ImmutabilityViolationError
from fiscal_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at"})


def _was_successful(target) -> bool:
    history = get_history(target, "status")
    if history.deleted:
        return str(getattr(history.deleted[0], "value", history.deleted[0])) == "success"
    if not history.added:
        return str(getattr(target.status, "value", target.status)) == "success"
    return False


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(entity_type, str(target.id), reason)


def _check_submission_record_update(mapper, connection, target):
    if not _was_successful(target):
        return
    for attr in inspect(target).attrs:
        if attr.key in _AUDIT_FIELDS:
            continue
        if attr.history.has_changes():
            _block(
                "SubmissionRecord", target, "UPDATE",
                f"cannot modify '{attr.key}' of an acknowledged submission",
                attr.key,
            )


def _check_item_code_update(mapper, connection, target):
    history = get_history(target, "item_code")
    if history.deleted and history.deleted[0] is not None:
        _block(
            type(target).__name__, target, "UPDATE",
            "item code cannot change once assigned", "item_code",
        )


def _forbid_delete(mapper, connection, target):
    _block(type(target).__name__, target, "DELETE", "records are never deleted")


def _listeners():
    from fiscal_kernel.models.catalog import CatalogItem, Ingredient
    from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
    from fiscal_kernel.models.sales_invoice import SalesInvoice, SalesInvoiceLine
    from fiscal_kernel.models.submission_record import SubmissionRecord

    return (
        (SubmissionRecord, "before_update", _check_submission_record_update),
        (SubmissionRecord, "before_delete", _forbid_delete),
        (SalesInvoice, "before_delete", _forbid_delete),
        (SalesInvoiceLine, "before_delete", _forbid_delete),
        (PurchaseInvoice, "before_delete", _forbid_delete),
        (CatalogItem, "before_update", _check_item_code_update),
        (CatalogItem, "before_delete", _forbid_delete),
        (Ingredient, "before_update", _check_item_code_update),
        (Ingredient, "before_delete", _forbid_delete),
    )


def register_immutability_listeners() -> None:
    """Register all listeners.  Idempotent."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove all listeners.  FOR TESTING ONLY."""
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
