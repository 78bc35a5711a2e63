"""Tax calculation module entry point."""

from .calculator import PerItemTaxCalculator
from .currency import CurrencyConversionService, RateCache, apply_rounding
from .errors import (
    ClassificationLookupFailed,
    ClassificationNotFound,
    ExchangeRateUnavailable,
    InvalidAmountError,
    InvalidCountryError,
    InvalidRecordError,
    ItemTaxCalculationErrors,
    LookupTimeout,
    TaxEngineError,
)
from .models import (
    CacheSource,
    ConversionRequest,
    ConversionResult,
    ItemTaxResult,
    QuoteItem,
    QuoteTaxSummary,
    RateOverride,
    RoundingMethod,
    TaxCalculationContext,
    TaxClassification,
    TaxRates,
    TaxSystem,
    ValuationMethod,
)
from .sources import (
    BoundedLookup,
    DestinationTaxRegimeSource,
    ExchangeRateSource,
    StaticClassificationSource,
    StaticExchangeRateSource,
    StaticTaxRegimeSource,
    TaxClassificationSource,
)

__all__ = [
    "PerItemTaxCalculator",
    "CurrencyConversionService",
    "RateCache",
    "apply_rounding",
    "ClassificationLookupFailed",
    "ClassificationNotFound",
    "ExchangeRateUnavailable",
    "InvalidAmountError",
    "InvalidCountryError",
    "InvalidRecordError",
    "ItemTaxCalculationErrors",
    "LookupTimeout",
    "TaxEngineError",
    "CacheSource",
    "ConversionRequest",
    "ConversionResult",
    "ItemTaxResult",
    "QuoteItem",
    "QuoteTaxSummary",
    "RateOverride",
    "RoundingMethod",
    "TaxCalculationContext",
    "TaxClassification",
    "TaxRates",
    "TaxSystem",
    "ValuationMethod",
    "BoundedLookup",
    "DestinationTaxRegimeSource",
    "ExchangeRateSource",
    "StaticClassificationSource",
    "StaticExchangeRateSource",
    "StaticTaxRegimeSource",
    "TaxClassificationSource",
]
