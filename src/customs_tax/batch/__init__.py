"""Batch processing of quote worklists."""

from .driver import (
    BatchOptions,
    BatchProcessingDriver,
    BatchProgress,
    BatchState,
    BatchUnitResult,
    ProgressChannel,
)
from .quotes import (
    BatchSummary,
    QuoteTaxProcessor,
    QuoteWorkUnit,
    load_worklist,
    quote_from_document,
    summarize_batch,
)

__all__ = [
    "BatchOptions",
    "BatchProcessingDriver",
    "BatchProgress",
    "BatchState",
    "BatchUnitResult",
    "ProgressChannel",
    "BatchSummary",
    "QuoteTaxProcessor",
    "QuoteWorkUnit",
    "load_worklist",
    "quote_from_document",
    "summarize_batch",
]
