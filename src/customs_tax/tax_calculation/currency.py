"""Currency conversion of USD minimum valuations into origin currencies.

Minimum valuations are stored in USD while quotes are priced in the origin
country's currency, so every floor has to be converted before it can be
compared with a declared price. A failed rate lookup never raises here: the
conversion falls back to a static rate table and is tagged ``fallback`` so
callers can surface a warning.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..utils.config import Config
from ..utils.logging import get_logger
from .errors import InvalidAmountError, InvalidCountryError
from .models import (
    CacheSource,
    ConversionRequest,
    ConversionResult,
    ConversionValidation,
    ExchangeRate,
    RoundingMethod,
    as_decimal,
)
from .sources import BoundedLookup, ExchangeRateSource

logger = get_logger(__name__)

# 1 USD = N units; used only when the rate source cannot answer.
FALLBACK_RATES_FROM_USD: Dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "NPR": Decimal("133.0"),
    "INR": Decimal("83.0"),
    "CNY": Decimal("7.2"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "CAD": Decimal("1.36"),
    "AUD": Decimal("1.52"),
    "JPY": Decimal("150.0"),
    "SGD": Decimal("1.35"),
    "AED": Decimal("3.67"),
    "SAR": Decimal("3.75"),
    "IDR": Decimal("15600.0"),
    "MYR": Decimal("4.7"),
    "PHP": Decimal("56.0"),
    "THB": Decimal("36.0"),
    "VND": Decimal("24500.0"),
    "KRW": Decimal("1330.0"),
}

FALLBACK_COUNTRY_CURRENCIES: Dict[str, str] = {
    "US": "USD",
    "IN": "INR",
    "NP": "NPR",
    "CA": "CAD",
    "AU": "AUD",
    "GB": "GBP",
    "JP": "JPY",
    "CN": "CNY",
    "SG": "SGD",
    "AE": "AED",
    "SA": "SAR",
    "ID": "IDR",
    "MY": "MYR",
    "PH": "PHP",
    "TH": "THB",
    "VN": "VND",
    "KR": "KRW",
}

_COUNTRY_CODE = re.compile(r"^[A-Z]{2}$")

_ROUNDING_MODES = {
    RoundingMethod.UP: ROUND_CEILING,
    RoundingMethod.DOWN: ROUND_FLOOR,
    RoundingMethod.NEAREST: ROUND_HALF_UP,
}


def normalize_country(country: str) -> str:
    """Upper-case an ISO 3166 alpha-2 code.

    Raises:
        InvalidCountryError: If the value is not a two-letter code.
    """
    code = str(country or "").strip().upper()
    if not _COUNTRY_CODE.match(code):
        raise InvalidCountryError(country)
    return code


def apply_rounding(amount: Decimal, method: RoundingMethod, decimal_places: int = 0) -> Decimal:
    """Round ``amount`` to ``decimal_places`` with the given policy.

    ``up`` is a ceiling and ``down`` a floor, so for the same input
    up >= nearest >= down always holds.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return amount.quantize(quantum, rounding=_ROUNDING_MODES[RoundingMethod(method)])


class RateCache:
    """Thread-safe TTL cache of exchange rates keyed by origin country.

    Writes are plain upserts; concurrent writers for the same key store the
    same rate within a TTL window so last-writer-wins is fine.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[ExchangeRate, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, country: str) -> Optional[ExchangeRate]:
        with self._lock:
            entry = self._entries.get(country)
            if entry is not None and self._clock() - entry[1] < self.ttl_seconds:
                self.hits += 1
                return entry[0]
            if entry is not None:
                del self._entries[country]
            self.misses += 1
            return None

    def put(self, rate: ExchangeRate) -> None:
        with self._lock:
            self._entries[rate.origin_country] = (rate, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CurrencyConversionService:
    """Converts USD amounts into an origin country's currency."""

    def __init__(
        self,
        rate_source: ExchangeRateSource,
        cache: Optional[RateCache] = None,
        rounding_method: RoundingMethod = RoundingMethod.UP,
        decimal_places: int = 0,
        lookup: Optional[BoundedLookup] = None,
    ) -> None:
        self.rate_source = rate_source
        self.cache = cache if cache is not None else RateCache()
        self.rounding_method = RoundingMethod(rounding_method)
        self.decimal_places = decimal_places
        self._lookup = lookup or BoundedLookup()

    @classmethod
    def from_config(cls, config: Config, rate_source: ExchangeRateSource) -> "CurrencyConversionService":
        return cls(
            rate_source,
            cache=RateCache(ttl_seconds=config.get("rate_cache_ttl_seconds", 300)),
            rounding_method=RoundingMethod(config.get("rounding_method", "up")),
            decimal_places=config.get("conversion_decimal_places", 0),
            lookup=BoundedLookup(timeout=config.get("lookup_timeout_seconds")),
        )

    def convert_minimum_valuation(
        self,
        usd_amount: Union[Decimal, int, str, float],
        origin_country: str,
        rounding_method: Optional[RoundingMethod] = None,
    ) -> ConversionResult:
        """Convert a USD minimum valuation into the origin currency.

        Args:
            usd_amount: Non-negative amount in USD
            origin_country: ISO alpha-2 code of the origin country
            rounding_method: Overrides the service default for this call

        Returns:
            ConversionResult tagged ``cached``, ``live`` or ``fallback``
        """
        amount = as_decimal(usd_amount, "usd_amount")
        country = normalize_country(origin_country)
        rate = self._resolve_rate(country)
        return self._build_result(amount, rate, rounding_method)

    def convert_multiple(
        self, conversions: Sequence[Union[ConversionRequest, Mapping[str, Any]]]
    ) -> List[ConversionResult]:
        """Convert several amounts, looking up each country's rate once.

        Results keep the input order. Each country resolves independently, so
        one failed lookup falls back without affecting the others.
        """
        requests = [self._as_request(c) for c in conversions]
        countries = [normalize_country(r.origin_country) for r in requests]

        rates: Dict[str, ExchangeRate] = {}
        for country in countries:
            if country not in rates:
                rates[country] = self._resolve_rate(country)

        return [
            self._build_result(request.usd_amount, rates[country])
            for request, country in zip(requests, countries)
        ]

    def validate_conversion(
        self,
        usd_amount: Union[Decimal, int, str, float],
        origin_country: str,
        expected_amount: Union[Decimal, int, str, float],
        tolerance_pct: Union[Decimal, int, str, float] = Decimal("1"),
    ) -> ConversionValidation:
        """Compare a fresh conversion against an expected figure.

        Used by monitoring to spot stale cached rates, not in the hot path.
        """
        expected = as_decimal(expected_amount, "expected_amount")
        if expected == 0:
            raise InvalidAmountError("expected_amount", expected_amount, "must be greater than zero")
        tolerance = as_decimal(tolerance_pct, "tolerance_pct")

        result = self.convert_minimum_valuation(usd_amount, origin_country)
        percentage_error = abs(result.converted_amount - expected) / expected * 100
        return ConversionValidation(
            is_valid=percentage_error <= tolerance,
            percentage_error=percentage_error,
            converted_amount=result.converted_amount,
            expected_amount=expected,
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    def _as_request(self, conversion: Union[ConversionRequest, Mapping[str, Any]]) -> ConversionRequest:
        if isinstance(conversion, ConversionRequest):
            return conversion
        return ConversionRequest(
            usd_amount=conversion.get("usd_amount"),
            origin_country=conversion.get("origin_country", ""),
            item_id=conversion.get("item_id"),
        )

    def _resolve_rate(self, country: str) -> ExchangeRate:
        cached = self.cache.get(country)
        if cached is not None:
            return replace(cached, source=CacheSource.CACHED)

        try:
            rate = self._lookup.call("exchange rate lookup", self.rate_source.get_rate, country)
        except Exception as e:
            logger.warning(f"Exchange rate lookup failed for {country}, using fallback rates: {e}")
            return self._fallback_rate(country)

        if rate.origin_country != country:
            rate = replace(rate, origin_country=country)
        self.cache.put(rate)
        return rate

    def _fallback_rate(self, country: str) -> ExchangeRate:
        currency = FALLBACK_COUNTRY_CURRENCIES.get(country, "USD")
        rate = FALLBACK_RATES_FROM_USD.get(currency)
        if rate is None:
            currency, rate = "USD", FALLBACK_RATES_FROM_USD["USD"]
        return ExchangeRate(
            origin_country=country,
            currency_code=currency,
            rate_from_usd=rate,
            retrieved_at=datetime.now(timezone.utc),
            source=CacheSource.FALLBACK,
        )

    def _build_result(
        self,
        usd_amount: Decimal,
        rate: ExchangeRate,
        rounding_method: Optional[RoundingMethod] = None,
    ) -> ConversionResult:
        method = RoundingMethod(rounding_method or self.rounding_method)
        converted = apply_rounding(usd_amount * rate.rate_from_usd, method, self.decimal_places)
        return ConversionResult(
            usd_amount=usd_amount,
            origin_currency=rate.currency_code,
            converted_amount=converted,
            exchange_rate=rate.rate_from_usd,
            conversion_timestamp=datetime.now(timezone.utc),
            rounding_method=method,
            cache_source=rate.source,
            origin_country=rate.origin_country,
        )
