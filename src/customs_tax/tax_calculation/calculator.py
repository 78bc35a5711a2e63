"""Per-item customs and destination tax calculation.

For each quote item the calculator decides the taxable value (declared
price against a currency-converted statutory minimum), then computes
customs duty on that value and a single value-added tax (GST, VAT or
sales tax, chosen by the destination's regime) on value plus duty.

Example: a Nepal kurta declared at 500 NPR with a $10 minimum is taxed on
1330 NPR, the converted floor, and the result carries a warning saying so.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from ..utils.logging import get_logger
from .currency import CurrencyConversionService
from .errors import (
    ClassificationLookupFailed,
    ClassificationNotFound,
    InvalidRecordError,
    ItemTaxCalculationErrors,
    TaxEngineError,
)
from .models import (
    ConversionResult,
    CustomsCalculation,
    ItemFailure,
    ItemTaxBatch,
    ItemTaxResult,
    QuoteItem,
    QuoteTaxSummary,
    RateOverride,
    TaxCalculationContext,
    TaxClassification,
    TaxRates,
    TaxSystem,
    ValuationMethod,
    ValuationOption,
)
from .sources import BoundedLookup, DestinationTaxRegimeSource, TaxClassificationSource

logger = get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

FALLBACK_RATE_WARNING = "Currency conversion used fallback exchange rates - actual rates may vary"
NO_TAX_WARNING = "No taxes calculated - item may be tax-exempt"


def _money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class PerItemTaxCalculator:
    """Computes valuation and tax breakdown for quote items."""

    def __init__(
        self,
        classification_source: TaxClassificationSource,
        regime_source: DestinationTaxRegimeSource,
        currency_service: CurrencyConversionService,
        lookup: Optional[BoundedLookup] = None,
    ) -> None:
        self.classification_source = classification_source
        self.regime_source = regime_source
        self.currency_service = currency_service
        self._lookup = lookup or BoundedLookup()

    def calculate_item_tax(self, item: QuoteItem, context: TaxCalculationContext) -> ItemTaxResult:
        """Calculate valuation and taxes for one item.

        Raises:
            ClassificationNotFound: If the item's code has no record.
            ClassificationLookupFailed: If the classification source failed.
            InvalidRecordError: If the destination's regime record is malformed.
        """
        tax_system, regime_warnings = self._resolve_regime(context)
        return self._calculate(item, context, tax_system, regime_warnings)

    def collect_item_taxes(self, items: Iterable[QuoteItem], context: TaxCalculationContext) -> ItemTaxBatch:
        """Calculate every item, collecting failures instead of raising.

        The destination regime is looked up once and shared by all items; a
        malformed regime record fails every item.
        """
        items = list(items)
        try:
            tax_system, regime_warnings = self._resolve_regime(context)
        except InvalidRecordError as e:
            logger.error(f"Cannot calculate {len(items)} items: {e}")
            return ItemTaxBatch(failures=tuple(ItemFailure(item_id=item.id, error=e) for item in items))

        results: List[ItemTaxResult] = []
        failures: List[ItemFailure] = []
        for item in items:
            try:
                results.append(self._calculate(item, context, tax_system, regime_warnings))
            except TaxEngineError as e:
                failures.append(ItemFailure(item_id=item.id, error=e))

        logger.info(f"Calculated taxes for {len(results)}/{len(items)} items")
        return ItemTaxBatch(results=tuple(results), failures=tuple(failures))

    def calculate_multiple_item_taxes(
        self, items: Iterable[QuoteItem], context: TaxCalculationContext
    ) -> List[ItemTaxResult]:
        """Calculate all items; raise the collected failures at the end.

        Raises:
            ItemTaxCalculationErrors: Carrying both the successful results and
                the per-item failures, after every item has been attempted.
        """
        batch = self.collect_item_taxes(items, context)
        if batch.failures:
            raise ItemTaxCalculationErrors(batch.results, batch.failures)
        return list(batch.results)

    @staticmethod
    def summarize(results: Sequence[ItemTaxResult]) -> QuoteTaxSummary:
        total_customs = sum((r.customs_calculation.amount_origin_currency for r in results), Decimal("0"))
        total_local = sum((r.local_tax_amount for r in results), Decimal("0"))
        total_taxes = sum((r.total_taxes for r in results), Decimal("0"))
        confidence = sum(r.confidence_score for r in results)

        return QuoteTaxSummary(
            total_items=len(results),
            items_with_minimum_valuation=sum(
                1 for r in results if r.valuation_method is ValuationMethod.MINIMUM_VALUATION
            ),
            currency_conversions_applied=sum(1 for r in results if r.minimum_valuation_conversion is not None),
            total_taxes=total_taxes,
            total_customs=total_customs,
            total_local_taxes=total_local,
            items_with_warnings=sum(1 for r in results if r.warnings),
            fallback_conversions=sum(
                1 for r in results
                if r.minimum_valuation_conversion is not None and r.minimum_valuation_conversion.used_fallback
            ),
            average_confidence=confidence / len(results) if results else 0.0,
        )

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _get_classification(self, code: str) -> TaxClassification:
        if not code or not code.strip():
            raise ClassificationNotFound(code or "")
        try:
            return self._lookup.call("classification lookup", self.classification_source.get_classification, code)
        except ClassificationNotFound:
            logger.warning(f"HSN code not found: {code}")
            raise
        except InvalidRecordError:
            raise
        except Exception as e:
            raise ClassificationLookupFailed(code, e) from e

    def _resolve_regime(self, context: TaxCalculationContext) -> Tuple[TaxSystem, Tuple[str, ...]]:
        destination = context.destination_country
        try:
            return self._lookup.call("tax regime lookup", self.regime_source.get_regime, destination), ()
        except InvalidRecordError:
            raise
        except Exception as e:
            logger.warning(f"Tax regime lookup failed for {destination}, defaulting to sales tax: {e}")
            return TaxSystem.SALES_TAX, (
                f"Tax regime for {destination} unavailable - sales tax regime assumed",
            )

    # -------------------------------------------------------------------------
    # Calculation
    # -------------------------------------------------------------------------

    def _calculate(
        self,
        item: QuoteItem,
        context: TaxCalculationContext,
        tax_system: TaxSystem,
        regime_warnings: Tuple[str, ...],
    ) -> ItemTaxResult:
        classification = self._get_classification(item.classification_code)
        rates, overrides = self._apply_overrides(classification, context.regime_overrides)

        price = item.price_origin_currency
        warnings: List[str] = []
        conversion: Optional[ConversionResult] = None

        if not classification.has_minimum_valuation:
            method = ValuationMethod.ORIGINAL_PRICE
            taxable = price
        else:
            conversion = self.currency_service.convert_minimum_valuation(
                classification.minimum_valuation_usd, context.origin_country,
            )
            if price < conversion.converted_amount:
                method = ValuationMethod.MINIMUM_VALUATION
                taxable = conversion.converted_amount
                warnings.append(
                    f"Minimum valuation applied: {conversion.converted_amount} {conversion.origin_currency} "
                    f"(converted from ${conversion.usd_amount} USD) instead of declared price "
                    f"{price} {conversion.origin_currency}"
                )
            else:
                # Ties go to the declared price.
                method = ValuationMethod.HIGHER_OF_BOTH
                taxable = price
            if conversion.used_fallback:
                warnings.append(FALLBACK_RATE_WARNING)

        local_rate = rates.rate_for(tax_system)
        customs_amount, local_amount = self._taxes_on(taxable, rates.customs_pct, local_rate)

        if rates.customs_pct == 0 and local_rate == 0:
            warnings.append(NO_TAX_WARNING)
        warnings.extend(regime_warnings)

        options = [self._option("actual_price", price, rates.customs_pct, local_rate)]
        if conversion is not None:
            options.append(
                self._option("minimum_valuation", conversion.converted_amount, rates.customs_pct, local_rate)
            )

        is_sales_tax = tax_system is TaxSystem.SALES_TAX
        return ItemTaxResult(
            item_id=item.id,
            valuation_method=method,
            taxable_amount_origin_currency=taxable,
            original_price_origin_currency=price,
            minimum_valuation_conversion=conversion,
            customs_calculation=CustomsCalculation(
                basis_amount=taxable,
                rate_pct=rates.customs_pct,
                amount_origin_currency=customs_amount,
            ),
            sales_tax_amount=local_amount if is_sales_tax else Decimal("0.00"),
            destination_tax_amount=Decimal("0.00") if is_sales_tax else local_amount,
            total_taxes=customs_amount + local_amount,
            warnings=tuple(warnings),
            item_name=item.name,
            classification_code=classification.code,
            category=classification.category,
            tax_system=tax_system,
            destination_tax_rate_pct=local_rate,
            valuation_options=tuple(options),
            overrides_applied=overrides,
            confidence_score=self._confidence_score(classification),
            calculation_timestamp=datetime.now(timezone.utc),
        )

    def _taxes_on(self, basis: Decimal, customs_pct: Decimal, local_pct: Decimal) -> Tuple[Decimal, Decimal]:
        """Customs on the basis; value-added tax on basis plus customs."""
        customs = _money(basis * customs_pct / HUNDRED)
        local = _money((basis + customs) * local_pct / HUNDRED)
        return customs, local

    def _option(self, label: str, basis: Decimal, customs_pct: Decimal, local_pct: Decimal) -> ValuationOption:
        customs, local = self._taxes_on(basis, customs_pct, local_pct)
        return ValuationOption(
            label=label,
            basis_amount=basis,
            customs_amount=customs,
            local_tax_amount=local,
            total_tax=customs + local,
        )

    @staticmethod
    def _apply_overrides(
        classification: TaxClassification, overrides: Sequence[RateOverride]
    ) -> Tuple[TaxRates, Tuple[RateOverride, ...]]:
        rates = classification.rates
        applied = []
        for override in overrides:
            if override.applies_to(classification):
                rates = rates.with_rate(override.tax_type, override.rate_pct)
                applied.append(override)
        return rates, tuple(applied)

    @staticmethod
    def _confidence_score(classification: TaxClassification) -> float:
        # Base score plus the bonus for an explicitly supplied code.
        score = 0.9
        if classification.classification_confidence is not None:
            score = (score + classification.classification_confidence) / 2
        if classification.has_minimum_valuation:
            score -= 0.05
        return round(min(1.0, max(0.0, score)), 4)
