"""Quote work units and the per-quote processor run by the batch driver."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Sequence, Tuple

from ..tax_calculation.calculator import PerItemTaxCalculator
from ..tax_calculation.currency import normalize_country
from ..tax_calculation.errors import (
    BatchUnitFailure,
    ClassificationLookupFailed,
    InvalidCountryError,
    InvalidRecordError,
    LookupTimeout,
)
from ..tax_calculation.models import (
    OverrideScope,
    QuoteItem,
    RateOverride,
    TaxCalculationContext,
    TaxType,
)
from ..utils.logging import get_logger
from .driver import BatchUnitResult

if TYPE_CHECKING:
    from ..tax_calculation.repository import QuoteRepository

logger = get_logger(__name__)

# Failures worth another attempt; anything else is final for the item.
TRANSIENT_ERRORS = (ClassificationLookupFailed, LookupTimeout)


@dataclass(frozen=True)
class QuoteWorkUnit:
    unit_id: str
    context: TaxCalculationContext
    items: Tuple[QuoteItem, ...]


@dataclass(frozen=True)
class BatchSummary:
    total_units: int
    successful_units: int
    failed_units: int
    total_items: int
    items_successful: int
    total_taxes: Decimal


def _override_from_document(doc: Dict[str, Any]) -> RateOverride:
    data = doc.get("override_data") or doc
    return RateOverride(
        scope=OverrideScope(doc.get("scope", "global")),
        scope_identifier=doc.get("scope_identifier"),
        tax_type=TaxType(data.get("tax_type", "customs")),
        rate_pct=data.get("override_rate", data.get("rate_pct")),
    )


def quote_from_document(doc: Dict[str, Any]) -> QuoteWorkUnit:
    """Build a work unit from a stored quote.

    Raises:
        InvalidRecordError: If the quote lacks countries or has bad items.
    """
    quote_id = str(doc.get("id") or doc.get("_id") or "")
    if not quote_id:
        raise InvalidRecordError("quote", "<unknown>", "missing id")

    origin = doc.get("origin_country")
    destination = doc.get("destination_country")
    if not origin or not destination:
        raise InvalidRecordError("quote", quote_id, "origin_country and destination_country are required")
    try:
        origin, destination = normalize_country(origin), normalize_country(destination)
    except InvalidCountryError as e:
        raise InvalidRecordError("quote", quote_id, str(e)) from e

    try:
        items = tuple(
            QuoteItem(
                id=str(item.get("id") or f"{quote_id}-{index}"),
                name=str(item.get("name") or ""),
                price_origin_currency=item.get("price_origin_currency", item.get("costprice_origin")),
                classification_code=str(item.get("hsn_code") or item.get("classification_code") or ""),
            )
            for index, item in enumerate(doc.get("items") or [])
        )
        overrides = tuple(
            _override_from_document(o)
            for o in doc.get("admin_overrides") or []
            if o.get("override_type", "tax_rate") == "tax_rate"
        )
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidRecordError("quote", quote_id, str(e)) from e

    return QuoteWorkUnit(
        unit_id=quote_id,
        context=TaxCalculationContext(
            origin_country=origin,
            destination_country=destination,
            regime_overrides=overrides,
        ),
        items=items,
    )


def load_worklist(repository: "QuoteRepository", statuses: Sequence[str] = ("draft", "pending")) -> List[QuoteWorkUnit]:
    """Read pending quotes, skipping (and logging) malformed ones."""
    units = []
    for doc in repository.find_pending_quotes(statuses):
        try:
            units.append(quote_from_document(doc))
        except InvalidRecordError as e:
            logger.error(f"Skipping quote: {e}")
    return units


class QuoteTaxProcessor:
    """Calculates every item of one quote.

    Transient lookup failures raise :class:`BatchUnitFailure` so the driver
    retries the quote; unknown classifications are final and are reported
    on the result instead.
    """

    def __init__(self, calculator: PerItemTaxCalculator) -> None:
        self.calculator = calculator

    def __call__(self, unit: QuoteWorkUnit) -> BatchUnitResult:
        logger.debug(f"Processing quote {unit.unit_id} with {len(unit.items)} items")
        batch = self.calculator.collect_item_taxes(unit.items, unit.context)

        transient = [f for f in batch.failures if isinstance(f.error, TRANSIENT_ERRORS)]
        if transient:
            raise BatchUnitFailure(
                unit.unit_id,
                "; ".join(f"{f.item_id}: {f.message}" for f in transient),
                cause=transient[0].error,
            )

        errors = [f"{f.item_id}: {f.message}" for f in batch.failures]
        return BatchUnitResult(
            unit_id=unit.unit_id,
            success=not batch.failures,
            items_processed=len(unit.items),
            items_successful=len(batch.results),
            error="; ".join(errors) or None,
            summary=self.calculator.summarize(batch.results),
            item_results=batch.results,
        )


def summarize_batch(results: Iterable[BatchUnitResult]) -> BatchSummary:
    results = list(results)
    successful = sum(1 for r in results if r.success)
    return BatchSummary(
        total_units=len(results),
        successful_units=successful,
        failed_units=len(results) - successful,
        total_items=sum(r.items_processed for r in results),
        items_successful=sum(r.items_successful for r in results),
        total_taxes=sum((r.summary.total_taxes for r in results if r.summary is not None), Decimal("0")),
    )
