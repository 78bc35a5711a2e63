"""Exceptions raised by the valuation engine and the batch driver."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .models import ItemFailure, ItemTaxResult


class TaxEngineError(Exception):
    """Base class for every error raised by this package."""


class InvalidAmountError(TaxEngineError, ValueError):
    """A monetary or rate input was non-numeric, non-finite or negative."""

    def __init__(self, field: str, value: object, reason: str = "must be a finite, non-negative decimal") -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class InvalidRecordError(TaxEngineError, ValueError):
    """An external record could not be parsed into a typed value."""

    def __init__(self, kind: str, key: str, reason: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"Malformed {kind} record {key!r}: {reason}")


class InvalidCountryError(TaxEngineError, ValueError):
    """A country code is not an ISO 3166 alpha-2 code."""

    def __init__(self, country: object) -> None:
        self.country = country
        super().__init__(f"Invalid ISO country code: {country!r}")


class ClassificationNotFound(TaxEngineError):
    """No classification record exists for a product code."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"HSN code not found: {code}")


class ClassificationLookupFailed(TaxEngineError):
    """The classification source could not be reached (timeout, network)."""

    def __init__(self, code: str, cause: BaseException) -> None:
        self.code = code
        self.cause = cause
        super().__init__(f"Classification lookup failed for {code}: {cause}")


class ExchangeRateUnavailable(TaxEngineError):
    """No usable USD rate for a country; always absorbed by a fallback."""

    def __init__(self, country: str, reason: str = "rate not found") -> None:
        self.country = country
        super().__init__(f"Exchange rate unavailable for {country}: {reason}")


class LookupTimeout(TaxEngineError):
    """A time-bounded external lookup ran past its budget."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class ItemTaxCalculationErrors(TaxEngineError):
    """One or more items of a multi-item calculation failed.

    ``results`` holds every successful item in input order so callers can
    still use the partial outcome; ``failures`` holds the per-item errors.
    """

    def __init__(self, results: Sequence["ItemTaxResult"], failures: Sequence["ItemFailure"]) -> None:
        self.results = tuple(results)
        self.failures = tuple(failures)
        ids = ", ".join(f.item_id for f in self.failures)
        super().__init__(f"{len(self.failures)} item(s) failed tax calculation: {ids}")


class BatchAlreadyRunning(TaxEngineError):
    """A batch run was started while another run is still in flight."""

    def __init__(self) -> None:
        super().__init__("Batch processing is already in progress")


class BatchUnitFailure(TaxEngineError):
    """A work unit failed an attempt and should be retried."""

    def __init__(self, unit_id: str, message: str, cause: Optional[BaseException] = None) -> None:
        self.unit_id = unit_id
        self.cause = cause
        super().__init__(f"Unit {unit_id} failed: {message}")
