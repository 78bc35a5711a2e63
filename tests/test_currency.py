"""Tests for USD minimum valuation conversion."""

import threading
import time
from decimal import Decimal

import pytest

from customs_tax.tax_calculation.currency import (
    CurrencyConversionService,
    RateCache,
    apply_rounding,
    normalize_country,
)
from customs_tax.tax_calculation.errors import ExchangeRateUnavailable, InvalidAmountError
from customs_tax.tax_calculation.models import CacheSource, ConversionRequest, RoundingMethod
from customs_tax.tax_calculation.sources import BoundedLookup, ExchangeRateSource, StaticExchangeRateSource


class FailingRateSource(ExchangeRateSource):
    def __init__(self):
        self.calls = 0

    def get_rate(self, country):
        self.calls += 1
        raise ExchangeRateUnavailable(country, "Database error")


class SlowRateSource(ExchangeRateSource):
    def get_rate(self, country):
        time.sleep(0.5)
        raise AssertionError("should have timed out first")


class TestConvertMinimumValuation:
    """Conversion of a single USD amount."""

    def test_nepal_conversion(self, currency_service):
        """$10 into NPR at 133 rounds up to 1330."""
        result = currency_service.convert_minimum_valuation(Decimal("10.0"), "NP")

        assert result.usd_amount == Decimal("10.0")
        assert result.origin_currency == "NPR"
        assert result.converted_amount == Decimal("1330")
        assert result.exchange_rate == Decimal("133.0")
        assert result.rounding_method is RoundingMethod.UP
        assert result.cache_source is CacheSource.CACHED
        assert result.origin_country == "NP"

    def test_india_conversion(self, currency_service):
        result = currency_service.convert_minimum_valuation(50, "IN")
        assert result.converted_amount == Decimal("4150")
        assert result.origin_currency == "INR"

    def test_usd_to_usd(self, currency_service):
        result = currency_service.convert_minimum_valuation("25.0", "us")
        assert result.converted_amount == Decimal("25")
        assert result.exchange_rate == Decimal("1.0")
        assert result.origin_currency == "USD"

    def test_zero_amount(self, currency_service):
        result = currency_service.convert_minimum_valuation(0, "NP")
        assert result.converted_amount == 0

    def test_live_source_then_cached(self):
        source = StaticExchangeRateSource({"NP": ("NPR", "133.0")}, source=CacheSource.LIVE)
        service = CurrencyConversionService(source)

        first = service.convert_minimum_valuation(10, "NP")
        second = service.convert_minimum_valuation(10, "NP")

        assert first.cache_source is CacheSource.LIVE
        assert second.cache_source is CacheSource.CACHED
        assert source.calls["NP"] == 1

    @pytest.mark.parametrize("amount", [-1, "abc", float("nan"), True, None, [10]])
    def test_rejects_invalid_amounts(self, currency_service, amount):
        with pytest.raises(InvalidAmountError):
            currency_service.convert_minimum_valuation(amount, "NP")

    @pytest.mark.parametrize("country", ["", "NPL", "1A", None])
    def test_rejects_invalid_country(self, currency_service, country):
        with pytest.raises(ValueError):
            currency_service.convert_minimum_valuation(10, country)


class TestFallbackRates:
    """A failed rate lookup degrades to the static table and never raises."""

    def test_uses_fallback_when_source_fails(self):
        service = CurrencyConversionService(FailingRateSource())
        result = service.convert_minimum_valuation(Decimal("10.0"), "NP")

        assert result.cache_source is CacheSource.FALLBACK
        assert result.used_fallback
        assert result.exchange_rate == Decimal("133.0")
        assert result.converted_amount == Decimal("1330")

    def test_unknown_country_falls_back_to_usd(self):
        service = CurrencyConversionService(FailingRateSource())
        result = service.convert_minimum_valuation(10, "ZZ")

        assert result.origin_currency == "USD"
        assert result.exchange_rate == Decimal("1.0")
        assert result.cache_source is CacheSource.FALLBACK

    def test_fallback_is_not_cached(self):
        source = FailingRateSource()
        service = CurrencyConversionService(source)

        service.convert_minimum_valuation(10, "NP")
        service.convert_minimum_valuation(10, "NP")

        assert source.calls == 2
        assert len(service.cache) == 0

    def test_timeout_is_treated_as_failure(self):
        service = CurrencyConversionService(SlowRateSource(), lookup=BoundedLookup(timeout=0.05))
        result = service.convert_minimum_valuation(10, "IN")

        assert result.cache_source is CacheSource.FALLBACK
        assert result.converted_amount == Decimal("830")


class TestRounding:
    def test_rate_with_decimals(self, rate_source, currency_service):
        rate_source.set_rate("NP", "NPR", "133.7")

        up = currency_service.convert_minimum_valuation(10, "NP", RoundingMethod.UP)
        down = currency_service.convert_minimum_valuation(10, "NP", RoundingMethod.DOWN)
        nearest = currency_service.convert_minimum_valuation(10, "NP", RoundingMethod.NEAREST)

        assert up.converted_amount == down.converted_amount == nearest.converted_amount == Decimal("1337")

    @pytest.mark.parametrize("amount", ["1333.7", "1333.5", "1333.2", "1333", "0.4"])
    def test_up_ge_nearest_ge_down(self, amount):
        value = Decimal(amount)
        up = apply_rounding(value, RoundingMethod.UP)
        nearest = apply_rounding(value, RoundingMethod.NEAREST)
        down = apply_rounding(value, RoundingMethod.DOWN)
        assert up >= nearest >= down

    def test_round_half_up(self):
        assert apply_rounding(Decimal("2.5"), RoundingMethod.NEAREST) == Decimal("3")
        assert apply_rounding(Decimal("2.49"), RoundingMethod.NEAREST) == Decimal("2")

    def test_minor_units(self):
        assert apply_rounding(Decimal("1333.701"), RoundingMethod.UP, decimal_places=2) == Decimal("1333.71")
        assert apply_rounding(Decimal("1333.709"), RoundingMethod.DOWN, decimal_places=2) == Decimal("1333.70")

    def test_service_default_rounding(self, rate_source):
        rate_source.set_rate("NP", "NPR", "133.37")
        service = CurrencyConversionService(rate_source, rounding_method=RoundingMethod.DOWN)
        assert service.convert_minimum_valuation(10, "NP").converted_amount == Decimal("1333")


class TestConvertMultiple:
    def test_preserves_order(self, currency_service):
        results = currency_service.convert_multiple([
            {"usd_amount": "10.0", "origin_country": "NP", "item_id": "kurta"},
            {"usd_amount": "50.0", "origin_country": "IN", "item_id": "mobile"},
            ConversionRequest(usd_amount=Decimal("25.0"), origin_country="CN", item_id="watch"),
        ])

        assert [r.converted_amount for r in results] == [Decimal("1330"), Decimal("4150"), Decimal("180")]

    def test_looks_up_each_country_once(self, rate_source):
        service = CurrencyConversionService(rate_source)
        service.convert_multiple([
            ConversionRequest(usd_amount=10, origin_country="NP"),
            ConversionRequest(usd_amount=20, origin_country="NP"),
            ConversionRequest(usd_amount=30, origin_country="np"),
        ])
        assert rate_source.calls == {"NP": 1}

    def test_one_failure_does_not_affect_others(self, rate_source):
        service = CurrencyConversionService(rate_source)
        results = service.convert_multiple([
            ConversionRequest(usd_amount=10, origin_country="NP"),
            ConversionRequest(usd_amount=10, origin_country="SG"),
        ])

        assert results[0].cache_source is CacheSource.CACHED
        assert results[1].cache_source is CacheSource.FALLBACK
        assert results[1].converted_amount == Decimal("14")  # 13.5 rounded up


class TestValidateConversion:
    def test_within_tolerance(self, currency_service):
        validation = currency_service.validate_conversion(Decimal("10.0"), "NP", Decimal("1330"), Decimal("1.0"))
        assert validation.is_valid
        assert validation.percentage_error < 1

    def test_stale_rate_detected(self, currency_service):
        validation = currency_service.validate_conversion(10, "NP", 1200, 1)
        assert not validation.is_valid
        assert validation.percentage_error > Decimal("10")

    def test_expected_must_be_positive(self, currency_service):
        with pytest.raises(InvalidAmountError):
            currency_service.validate_conversion(10, "NP", 0)


class TestRateCache:
    def test_hits_and_misses(self, rate_source, currency_service):
        currency_service.convert_minimum_valuation(10, "NP")
        currency_service.convert_minimum_valuation(10, "NP")

        assert currency_service.cache.misses == 1
        assert currency_service.cache.hits == 1
        assert rate_source.calls["NP"] == 1

    def test_clear_cache_forces_lookup(self, rate_source, currency_service):
        currency_service.convert_minimum_valuation(10, "NP")
        currency_service.clear_cache()
        currency_service.convert_minimum_valuation(10, "NP")

        assert rate_source.calls["NP"] == 2

    def test_entries_expire_after_ttl(self, rate_source):
        now = [1000.0]
        service = CurrencyConversionService(rate_source, cache=RateCache(ttl_seconds=60, clock=lambda: now[0]))

        service.convert_minimum_valuation(10, "NP")
        now[0] += 59
        service.convert_minimum_valuation(10, "NP")
        now[0] += 2
        result = service.convert_minimum_valuation(10, "NP")

        assert rate_source.calls["NP"] == 2
        assert result.cache_source is CacheSource.CACHED

    def test_concurrent_conversions(self, rate_source, currency_service):
        expected = {"NP": Decimal("1330"), "IN": Decimal("830"), "CN": Decimal("72"), "US": Decimal("10")}
        countries = list(expected) * 25
        results = []
        lock = threading.Lock()
        start = threading.Barrier(len(countries))

        def convert(country):
            start.wait(5)
            result = currency_service.convert_minimum_valuation(10, country)
            with lock:
                results.append((country, result))

        threads = [threading.Thread(target=convert, args=(country,)) for country in countries]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert len(results) == 100
        assert all(result.converted_amount == expected[country] for country, result in results)
        assert all(result.cache_source is CacheSource.CACHED for _, result in results)

        cache = currency_service.cache
        assert cache.hits + cache.misses == 100
        assert cache.misses == sum(rate_source.calls.values())
        assert set(rate_source.calls) == set(expected)
        assert len(cache) == 4

    def test_isolated_instances(self, rate_source):
        first = CurrencyConversionService(rate_source)
        second = CurrencyConversionService(rate_source)

        first.convert_minimum_valuation(10, "NP")
        assert len(first.cache) == 1
        assert len(second.cache) == 0


def test_normalize_country():
    assert normalize_country(" np ") == "NP"
