"""Kernel services: sequence allocation and submission lifecycle."""

from fiscal_kernel.services.sequence_service import (
    INVOICE_NAMESPACE,
    PURCHASE_NAMESPACE,
    LedgerSequenceAllocator,
    SequenceAllocator,
    default_item_code_sources,
    item_code_namespace,
)
from fiscal_kernel.services.submission_recorder import SubmissionRecorder

__all__ = [
    "INVOICE_NAMESPACE",
    "LedgerSequenceAllocator",
    "PURCHASE_NAMESPACE",
    "SequenceAllocator",
    "SubmissionRecorder",
    "default_item_code_sources",
    "item_code_namespace",
]
