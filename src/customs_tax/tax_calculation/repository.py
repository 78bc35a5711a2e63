"""MongoDB-backed sources for rates, classifications, regimes and quotes.

Documents are parsed into typed values here; malformed records are
rejected with :class:`InvalidRecordError` instead of leaking missing
rates into the calculation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from pymongo import MongoClient

from ..utils.config import Config
from ..utils.logging import get_logger
from .errors import ClassificationNotFound, ExchangeRateUnavailable, InvalidAmountError, InvalidRecordError
from .models import CacheSource, ExchangeRate, TaxClassification, TaxRates, TaxSystem
from .sources import DestinationTaxRegimeSource, ExchangeRateSource, TaxClassificationSource

logger = get_logger(__name__)


def _nested(doc: Dict[str, Any], *path: str) -> Any:
    value: Any = doc
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def rate_from_document(doc: Optional[Dict[str, Any]], country: str) -> ExchangeRate:
    """Build an ExchangeRate from a ``country_settings`` document."""
    if not doc:
        raise ExchangeRateUnavailable(country)
    currency = doc.get("currency")
    if not currency:
        raise ExchangeRateUnavailable(country, "record has no currency")
    retrieved_at = doc.get("updated_at")
    if not isinstance(retrieved_at, datetime):
        retrieved_at = datetime.now(timezone.utc)
    try:
        return ExchangeRate(
            origin_country=country,
            currency_code=str(currency).upper(),
            rate_from_usd=doc.get("rate_from_usd"),
            retrieved_at=retrieved_at,
            source=CacheSource.CACHED,
        )
    except InvalidAmountError as e:
        raise ExchangeRateUnavailable(country, str(e)) from e


def classification_from_document(doc: Dict[str, Any]) -> TaxClassification:
    """Build a TaxClassification from an ``hsn_master`` document.

    Accepts either a flat ``rates`` mapping (``customs_pct``, ``gst_pct``,
    ``vat_pct``, ``sales_tax_pct``) or the nested
    ``tax_data.typical_rates`` shape. A customs rate is mandatory.
    """
    code = str(doc.get("hsn_code") or doc.get("code") or "")
    if not code:
        raise InvalidRecordError("classification", "<unknown>", "missing hsn_code")

    if isinstance(doc.get("rates"), dict):
        flat = doc["rates"]
        customs = flat.get("customs_pct")
        gst, vat, sales = flat.get("gst_pct"), flat.get("vat_pct"), flat.get("sales_tax_pct")
    else:
        typical = _nested(doc, "tax_data", "typical_rates") or {}
        customs = _nested(typical, "customs", "common")
        gst = _nested(typical, "gst", "standard")
        vat = _nested(typical, "vat", "common")
        sales = _nested(typical, "sales_tax", "standard")

    if customs is None:
        raise InvalidRecordError("classification", code, "missing customs rate")

    confidence = doc.get("classification_confidence")
    if confidence is None:
        confidence = _nested(doc, "classification_data", "auto_classification", "confidence")

    try:
        return TaxClassification(
            code=code,
            category=str(doc.get("category") or ""),
            minimum_valuation_usd=doc.get("minimum_valuation_usd"),
            requires_currency_conversion=bool(doc.get("requires_currency_conversion", False)),
            rates=TaxRates(customs_pct=customs, gst_pct=gst, vat_pct=vat, sales_tax_pct=sales),
            classification_confidence=float(confidence) if confidence is not None else None,
            description=str(doc.get("description") or ""),
        )
    except InvalidRecordError:
        raise
    except (ValueError, TypeError) as e:
        raise InvalidRecordError("classification", code, str(e)) from e


def regime_from_document(doc: Optional[Dict[str, Any]], country: str) -> TaxSystem:
    """Read ``config_data.tax_system``; a missing country means sales tax."""
    if not doc:
        return TaxSystem.SALES_TAX
    raw = _nested(doc, "config_data", "tax_system")
    try:
        return TaxSystem.parse(raw)
    except ValueError:
        raise InvalidRecordError("tax regime", country, f"unknown tax_system {raw!r}") from None


class MongoRepository:
    """Connection handling shared by the MongoDB-backed sources."""

    collection_key = ""

    def __init__(
        self,
        url: Optional[str] = None,
        db_name: Optional[str] = None,
        collection: Optional[str] = None,
        config: Optional[Config] = None,
    ) -> None:
        # Load config with .env file explicitly
        config = config or Config(".env")
        self._url = url or config.get("mongo_url")
        self._db = db_name or config.get("mongo_db")
        self._collection = collection or config.get(self.collection_key)
        self._timeout_ms = int(float(config.get("lookup_timeout_seconds", 5.0)) * 1000)
        if not self._url:
            raise ValueError("DB_CONNECTION_URL is required")
        self._client: Optional[MongoClient] = None

    def __enter__(self) -> "MongoRepository":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def connect(self) -> None:
        if self._client is None:
            self._client = MongoClient(
                self._url,
                serverSelectionTimeoutMS=self._timeout_ms,
                socketTimeoutMS=self._timeout_ms,
            )

    def disconnect(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _coll(self):
        if self._client is None:
            self.connect()
        return self._client[self._db][self._collection]


class MongoExchangeRateSource(MongoRepository, ExchangeRateSource):
    collection_key = "rates_collection"

    def get_rate(self, country: str) -> ExchangeRate:
        doc = self._coll().find_one({"code": country}, max_time_ms=self._timeout_ms)
        return rate_from_document(doc, country)


class MongoClassificationSource(MongoRepository, TaxClassificationSource):
    collection_key = "classification_collection"

    def get_classification(self, code: str) -> TaxClassification:
        doc = self._coll().find_one({"hsn_code": code, "is_active": True}, max_time_ms=self._timeout_ms)
        if not doc:
            raise ClassificationNotFound(code)
        return classification_from_document(doc)


class MongoTaxRegimeSource(MongoRepository, DestinationTaxRegimeSource):
    collection_key = "regime_collection"

    def get_regime(self, country: str) -> TaxSystem:
        doc = self._coll().find_one({"config_type": "country", "config_key": country}, max_time_ms=self._timeout_ms)
        return regime_from_document(doc, country)


class QuoteRepository(MongoRepository):
    """Reads the quote worklist for batch processing."""

    collection_key = "quotes_collection"

    def find_pending_quotes(self, statuses: Sequence[str] = ("draft", "pending")) -> List[Dict[str, Any]]:
        docs = list(self._coll().find({"status": {"$in": list(statuses)}, "items": {"$ne": None}}))
        logger.info(f"Found {len(docs)} quotes with status in {list(statuses)}")
        return docs
