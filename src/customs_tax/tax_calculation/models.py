"""
Value types for per-item customs valuation.

Every type here is a frozen dataclass: calculation results are produced
once and handed to the caller, and a re-calculation builds new values
instead of updating old ones. Monetary fields are ``Decimal`` and are
validated on construction with :func:`as_decimal`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Tuple

from .errors import InvalidAmountError, InvalidRecordError


class RoundingMethod(str, Enum):
    """How a converted amount is brought to the currency's unit."""

    UP = "up"  # ceiling, never under-declare
    DOWN = "down"
    NEAREST = "nearest"  # round half up


class CacheSource(str, Enum):
    """Provenance of the exchange rate behind a conversion."""

    CACHED = "cached"
    LIVE = "live"
    FALLBACK = "fallback"


class ValuationMethod(str, Enum):
    ORIGINAL_PRICE = "original_price"
    MINIMUM_VALUATION = "minimum_valuation"
    HIGHER_OF_BOTH = "higher_of_both"


class TaxSystem(str, Enum):
    """Value-added tax regime applied by a destination country."""

    GST = "gst"
    VAT = "vat"
    SALES_TAX = "sales_tax"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "TaxSystem":
        """Parse ``GST``/``VAT``/``SALES_TAX``/``NONE`` in any case.

        Raises:
            ValueError: If the value names no known regime.
        """
        if value is None:
            return cls.NONE
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if normalized == "salestax":
            normalized = "sales_tax"
        return cls(normalized)


class TaxType(str, Enum):
    """Rate that a :class:`RateOverride` replaces."""

    CUSTOMS = "customs"
    GST = "gst"
    VAT = "vat"
    SALES_TAX = "sales_tax"


class OverrideScope(str, Enum):
    GLOBAL = "global"
    CATEGORY = "category"
    CLASSIFICATION_CODE = "classification_code"


def as_decimal(value: Any, field_name: str, allow_none: bool = False) -> Optional[Decimal]:
    """Coerce an int, str, float or Decimal into a finite, non-negative Decimal.

    Booleans and anything unparseable are rejected with
    :class:`InvalidAmountError` instead of propagating NaN downstream.
    """
    if value is None:
        if allow_none:
            return None
        raise InvalidAmountError(field_name, value, "is required")
    if isinstance(value, bool):
        raise InvalidAmountError(field_name, value, "booleans are not amounts")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmountError(field_name, value, "is not numeric") from None
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        raise InvalidAmountError(field_name, value, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmountError(field_name, value, "must be finite")
    if result < 0:
        raise InvalidAmountError(field_name, value, "cannot be negative")
    return result


# =============================================================================
# Currency conversion
# =============================================================================


@dataclass(frozen=True)
class ExchangeRate:
    """1 USD = ``rate_from_usd`` units of ``currency_code``."""

    origin_country: str
    currency_code: str
    rate_from_usd: Decimal
    retrieved_at: datetime
    source: CacheSource = CacheSource.LIVE

    def __post_init__(self) -> None:
        rate = as_decimal(self.rate_from_usd, "rate_from_usd")
        if rate == 0:
            raise InvalidAmountError("rate_from_usd", self.rate_from_usd, "must be greater than zero")
        object.__setattr__(self, "rate_from_usd", rate)


@dataclass(frozen=True)
class ConversionRequest:
    usd_amount: Decimal
    origin_country: str
    item_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "usd_amount", as_decimal(self.usd_amount, "usd_amount"))


@dataclass(frozen=True)
class ConversionResult:
    """A USD amount converted into an origin currency."""

    usd_amount: Decimal
    origin_currency: str
    converted_amount: Decimal
    exchange_rate: Decimal
    conversion_timestamp: datetime
    rounding_method: RoundingMethod
    cache_source: CacheSource
    origin_country: str = ""

    @property
    def used_fallback(self) -> bool:
        return self.cache_source is CacheSource.FALLBACK

    def describe(self) -> str:
        """Human-readable conversion, e.g. ``$10 USD -> 1330 NPR``."""
        return f"${self.usd_amount} USD -> {self.converted_amount} {self.origin_currency}"


@dataclass(frozen=True)
class ConversionValidation:
    is_valid: bool
    percentage_error: Decimal
    converted_amount: Decimal
    expected_amount: Decimal


# =============================================================================
# Classification and context
# =============================================================================


@dataclass(frozen=True)
class TaxRates:
    """Percent rates for one classification; ``None`` means not levied."""

    customs_pct: Decimal
    gst_pct: Optional[Decimal] = None
    vat_pct: Optional[Decimal] = None
    sales_tax_pct: Optional[Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "customs_pct", as_decimal(self.customs_pct, "customs_pct"))
        for name in ("gst_pct", "vat_pct", "sales_tax_pct"):
            object.__setattr__(self, name, as_decimal(getattr(self, name), name, allow_none=True))

    def rate_for(self, system: TaxSystem) -> Decimal:
        """The single value-added rate selected by a regime (zero if unset)."""
        rate = {
            TaxSystem.GST: self.gst_pct,
            TaxSystem.VAT: self.vat_pct,
            TaxSystem.SALES_TAX: self.sales_tax_pct,
        }.get(system)
        return rate if rate is not None else Decimal("0")

    def with_rate(self, tax_type: TaxType, rate_pct: Decimal) -> "TaxRates":
        attr = "customs_pct" if tax_type is TaxType.CUSTOMS else f"{tax_type.value}_pct"
        return replace(self, **{attr: rate_pct})


@dataclass(frozen=True)
class TaxClassification:
    code: str
    category: str
    minimum_valuation_usd: Optional[Decimal]
    requires_currency_conversion: bool
    rates: TaxRates
    classification_confidence: Optional[float] = None
    description: str = ""

    def __post_init__(self) -> None:
        minimum = as_decimal(self.minimum_valuation_usd, "minimum_valuation_usd", allow_none=True)
        if minimum is None and self.requires_currency_conversion:
            raise InvalidRecordError(
                "classification", self.code,
                "requires_currency_conversion is set without a minimum valuation",
            )
        object.__setattr__(self, "minimum_valuation_usd", minimum)

    @property
    def has_minimum_valuation(self) -> bool:
        return self.minimum_valuation_usd is not None and self.requires_currency_conversion


@dataclass(frozen=True)
class RateOverride:
    """Admin override replacing one rate for matching classifications."""

    scope: OverrideScope
    tax_type: TaxType
    rate_pct: Decimal
    scope_identifier: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rate_pct", as_decimal(self.rate_pct, "rate_pct"))

    def applies_to(self, classification: TaxClassification) -> bool:
        if self.scope is OverrideScope.GLOBAL:
            return True
        if self.scope is OverrideScope.CATEGORY:
            return self.scope_identifier == classification.category
        return self.scope_identifier == classification.code


@dataclass(frozen=True)
class QuoteItem:
    id: str
    name: str
    price_origin_currency: Decimal
    classification_code: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "price_origin_currency",
            as_decimal(self.price_origin_currency, "price_origin_currency"),
        )


@dataclass(frozen=True)
class TaxCalculationContext:
    """One per quote, shared by all of its items."""

    origin_country: str
    destination_country: str
    regime_overrides: Tuple[RateOverride, ...] = ()


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class CustomsCalculation:
    basis_amount: Decimal
    rate_pct: Decimal
    amount_origin_currency: Decimal


@dataclass(frozen=True)
class ValuationOption:
    """Taxes computed on one candidate basis, for side-by-side review."""

    label: str  # "actual_price" or "minimum_valuation"
    basis_amount: Decimal
    customs_amount: Decimal
    local_tax_amount: Decimal
    total_tax: Decimal


@dataclass(frozen=True)
class ItemTaxResult:
    item_id: str
    valuation_method: ValuationMethod
    taxable_amount_origin_currency: Decimal
    original_price_origin_currency: Decimal
    minimum_valuation_conversion: Optional[ConversionResult]
    customs_calculation: CustomsCalculation
    sales_tax_amount: Decimal
    destination_tax_amount: Decimal
    total_taxes: Decimal
    warnings: Tuple[str, ...] = ()
    # Metadata
    item_name: str = ""
    classification_code: str = ""
    category: str = ""
    tax_system: TaxSystem = TaxSystem.NONE
    destination_tax_rate_pct: Decimal = Decimal("0")
    valuation_options: Tuple[ValuationOption, ...] = ()
    overrides_applied: Tuple[RateOverride, ...] = ()
    confidence_score: float = 0.0
    calculation_timestamp: Optional[datetime] = None

    @property
    def local_tax_amount(self) -> Decimal:
        return self.sales_tax_amount + self.destination_tax_amount


@dataclass(frozen=True)
class ItemFailure:
    item_id: str
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class ItemTaxBatch:
    """All outcomes of a multi-item calculation, successes in input order."""

    results: Tuple[ItemTaxResult, ...] = ()
    failures: Tuple[ItemFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class QuoteTaxSummary:
    total_items: int
    items_with_minimum_valuation: int
    currency_conversions_applied: int
    total_taxes: Decimal
    total_customs: Decimal = Decimal("0")
    total_local_taxes: Decimal = Decimal("0")
    items_with_warnings: int = 0
    fallback_conversions: int = 0
    average_confidence: float = 0.0
