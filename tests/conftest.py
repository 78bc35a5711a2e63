"""Pytest configuration and fixtures."""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add src to Python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from customs_tax.tax_calculation.calculator import PerItemTaxCalculator  # noqa: E402
from customs_tax.tax_calculation.currency import CurrencyConversionService, RateCache  # noqa: E402
from customs_tax.tax_calculation.models import (  # noqa: E402
    CacheSource,
    QuoteItem,
    TaxCalculationContext,
    TaxClassification,
    TaxRates,
)
from customs_tax.tax_calculation.sources import (  # noqa: E402
    StaticClassificationSource,
    StaticExchangeRateSource,
    StaticTaxRegimeSource,
)


@pytest.fixture
def rate_source():
    """Stored rates as the rate collection would return them."""
    return StaticExchangeRateSource(
        {
            "NP": ("NPR", "133.0"),
            "IN": ("INR", "83.0"),
            "CN": ("CNY", "7.2"),
            "US": ("USD", "1.0"),
        },
        source=CacheSource.CACHED,
    )


@pytest.fixture
def kurta_classification():
    return TaxClassification(
        code="6204",
        category="clothing",
        minimum_valuation_usd=Decimal("10.0"),
        requires_currency_conversion=True,
        rates=TaxRates(customs_pct=Decimal("12"), gst_pct=Decimal("0"), vat_pct=Decimal("13")),
        classification_confidence=0.85,
        description="Kurtas and dresses",
    )


@pytest.fixture
def mobile_classification():
    return TaxClassification(
        code="8517",
        category="electronics",
        minimum_valuation_usd=Decimal("50.0"),
        requires_currency_conversion=True,
        rates=TaxRates(customs_pct=Decimal("20"), gst_pct=Decimal("18"), vat_pct=Decimal("0")),
        classification_confidence=0.95,
    )


@pytest.fixture
def book_classification():
    return TaxClassification(
        code="4901",
        category="books",
        minimum_valuation_usd=None,
        requires_currency_conversion=False,
        rates=TaxRates(customs_pct=Decimal("0"), gst_pct=Decimal("0"), vat_pct=Decimal("0")),
        classification_confidence=0.9,
    )


@pytest.fixture
def classification_source(kurta_classification, mobile_classification, book_classification):
    return StaticClassificationSource(
        {c.code: c for c in (kurta_classification, mobile_classification, book_classification)}
    )


@pytest.fixture
def regime_source():
    return StaticTaxRegimeSource({"IN": "GST", "GB": "VAT", "US": "SALES_TAX", "HK": "NONE"})


@pytest.fixture
def currency_service(rate_source):
    return CurrencyConversionService(rate_source, cache=RateCache(ttl_seconds=300))


@pytest.fixture
def calculator(classification_source, regime_source, currency_service):
    return PerItemTaxCalculator(classification_source, regime_source, currency_service)


@pytest.fixture
def india_context():
    """Nepal to India: GST destination."""
    return TaxCalculationContext(origin_country="NP", destination_country="IN")


@pytest.fixture
def uk_context():
    """Nepal to the UK: VAT destination."""
    return TaxCalculationContext(origin_country="NP", destination_country="GB")


@pytest.fixture
def kurta_item():
    return QuoteItem(id="kurta-1", name="Nepal Traditional Kurta", price_origin_currency=Decimal("500"),
                     classification_code="6204")


@pytest.fixture
def mobile_item():
    return QuoteItem(id="mobile-1", name="Samsung Galaxy S23", price_origin_currency=Decimal("80000"),
                     classification_code="8517")


@pytest.fixture
def book_item():
    return QuoteItem(id="book-1", name="Programming Textbook", price_origin_currency=Decimal("1500"),
                     classification_code="4901")
