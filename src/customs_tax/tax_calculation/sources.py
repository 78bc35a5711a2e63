"""External data sources consumed by the valuation engine.

Three narrow interfaces: exchange rates, product classifications and
destination tax regimes. Each comes with an in-memory implementation
used by tests and scripts; the MongoDB-backed versions live in
:mod:`.repository`.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar, Union

from .errors import ClassificationNotFound, ExchangeRateUnavailable, LookupTimeout
from .models import CacheSource, ExchangeRate, TaxClassification, TaxSystem

T = TypeVar("T")


class ExchangeRateSource(ABC):
    @abstractmethod
    def get_rate(self, country: str) -> ExchangeRate:
        """Return the USD rate for a country's currency.

        Raises:
            ExchangeRateUnavailable: If no rate is known for the country.
        """


class TaxClassificationSource(ABC):
    @abstractmethod
    def get_classification(self, code: str) -> TaxClassification:
        """Return the classification record for a product code.

        Raises:
            ClassificationNotFound: If no record exists for the code.
        """


class DestinationTaxRegimeSource(ABC):
    @abstractmethod
    def get_regime(self, country: str) -> TaxSystem:
        """Return the value-added tax system applied by a destination."""


class StaticExchangeRateSource(ExchangeRateSource):
    """Rates held in memory, keyed by country code.

    ``rates`` maps a country to ``(currency_code, rate_from_usd)``.
    """

    def __init__(
        self,
        rates: Optional[Mapping[str, tuple]] = None,
        source: CacheSource = CacheSource.CACHED,
    ) -> None:
        self._rates: Dict[str, tuple] = {k.upper(): v for k, v in (rates or {}).items()}
        self._source = source
        self.calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def set_rate(self, country: str, currency_code: str, rate_from_usd: Union[Decimal, str, int]) -> None:
        self._rates[country.upper()] = (currency_code, rate_from_usd)

    def get_rate(self, country: str) -> ExchangeRate:
        key = country.upper()
        with self._lock:
            self.calls[key] = self.calls.get(key, 0) + 1
        if key not in self._rates:
            raise ExchangeRateUnavailable(key)
        currency_code, rate = self._rates[key]
        return ExchangeRate(
            origin_country=key,
            currency_code=currency_code,
            rate_from_usd=rate,
            retrieved_at=datetime.now(timezone.utc),
            source=self._source,
        )


class StaticClassificationSource(TaxClassificationSource):
    def __init__(self, classifications: Optional[Mapping[str, TaxClassification]] = None) -> None:
        self._classifications = dict(classifications or {})

    def add(self, classification: TaxClassification) -> None:
        self._classifications[classification.code] = classification

    def get_classification(self, code: str) -> TaxClassification:
        try:
            return self._classifications[code]
        except KeyError:
            raise ClassificationNotFound(code) from None


class StaticTaxRegimeSource(DestinationTaxRegimeSource):
    """Regimes held in memory; unknown destinations get ``default``."""

    def __init__(
        self,
        regimes: Optional[Mapping[str, Any]] = None,
        default: TaxSystem = TaxSystem.SALES_TAX,
    ) -> None:
        self._regimes = {k.upper(): TaxSystem.parse(v) for k, v in (regimes or {}).items()}
        self._default = default

    def get_regime(self, country: str) -> TaxSystem:
        return self._regimes.get(country.upper(), self._default)


class BoundedLookup:
    """Runs external lookups with a per-call time budget.

    With ``timeout=None`` calls run inline. Otherwise each call gets its own
    daemon thread and the caller waits at most ``timeout`` seconds for it,
    raising :class:`LookupTimeout` when the call has not returned. Nothing
    is shared between calls, so a hung lookup only ever holds up its own
    caller; the abandoned thread finishes in the background.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    def call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        if self.timeout is None:
            return func(*args)

        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["value"] = func(*args)
            except BaseException as e:  # re-raised in the caller
                outcome["error"] = e

        worker = threading.Thread(target=run, name=f"lookup-{operation}", daemon=True)
        worker.start()
        worker.join(self.timeout)
        if worker.is_alive():
            raise LookupTimeout(operation, self.timeout)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]
