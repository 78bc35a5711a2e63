"""
Command-line interface for the customs tax engine.
"""

import argparse
import sys
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import __version__
from .batch.driver import BatchOptions, BatchProcessingDriver, BatchProgress
from .batch.quotes import QuoteTaxProcessor, load_worklist, summarize_batch
from .tax_calculation.calculator import PerItemTaxCalculator
from .tax_calculation.currency import CurrencyConversionService
from .tax_calculation.models import RoundingMethod
from .tax_calculation.sources import BoundedLookup
from .utils.config import Config
from .utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="Customs Tax Engine - minimum valuation conversion and batch quote taxes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  customs-tax --version
  customs-tax convert --usd 10 --country NP
  customs-tax validate-rate --usd 10 --country NP --expected 1330 --tolerance 1
  customs-tax run-batch --concurrency 20 --retry-attempts 2
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Customs Tax Engine {__version__}",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--log-file",
        help="Log file path",
    )

    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file with database and engine settings (default: .env)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
    )

    convert_parser = subparsers.add_parser(
        "convert",
        help="Convert a USD minimum valuation into an origin currency",
    )
    convert_parser.add_argument("--usd", type=Decimal, required=True, help="Amount in USD")
    convert_parser.add_argument("--country", required=True, help="Origin country (ISO alpha-2)")
    convert_parser.add_argument(
        "--rounding",
        choices=[m.value for m in RoundingMethod],
        default=None,
        help="Rounding method (default: from configuration, normally 'up')",
    )

    validate_parser = subparsers.add_parser(
        "validate-rate",
        help="Check a conversion against an expected amount",
    )
    validate_parser.add_argument("--usd", type=Decimal, required=True, help="Amount in USD")
    validate_parser.add_argument("--country", required=True, help="Origin country (ISO alpha-2)")
    validate_parser.add_argument("--expected", type=Decimal, required=True, help="Expected converted amount")
    validate_parser.add_argument(
        "--tolerance",
        type=Decimal,
        default=Decimal("1"),
        help="Allowed error in percent (default: 1)",
    )

    batch_parser = subparsers.add_parser(
        "run-batch",
        help="Calculate taxes for every draft/pending quote",
    )
    batch_parser.add_argument("--concurrency", type=int, help="Worker pool size (default: 50)")
    batch_parser.add_argument("--retry-attempts", type=int, help="Retries per quote (default: 2)")
    batch_parser.add_argument("--retry-delay", type=float, help="Base retry delay in seconds (default: 1.0)")
    batch_parser.add_argument(
        "--status",
        action="append",
        dest="statuses",
        help="Quote status to include (repeatable, default: draft and pending)",
    )

    return parser


def build_currency_service(config: Config) -> CurrencyConversionService:
    """Currency service backed by the MongoDB rate collection."""
    from .tax_calculation.repository import MongoExchangeRateSource

    return CurrencyConversionService.from_config(config, MongoExchangeRateSource(config=config))


def build_calculator(config: Config) -> PerItemTaxCalculator:
    """Per-item calculator backed by the MongoDB collections."""
    from .tax_calculation.repository import MongoClassificationSource, MongoTaxRegimeSource

    return PerItemTaxCalculator(
        classification_source=MongoClassificationSource(config=config),
        regime_source=MongoTaxRegimeSource(config=config),
        currency_service=build_currency_service(config),
        lookup=BoundedLookup(timeout=config.get("lookup_timeout_seconds")),
    )


def load_quote_worklist(config: Config, statuses: Sequence[str]):
    from .tax_calculation.repository import QuoteRepository

    with QuoteRepository(config=config) as repo:
        return load_worklist(repo, statuses)


def _print_box(lines: List[Tuple[str, object]]) -> None:
    label_width = max(len(lbl) for lbl, _ in lines)
    inner_width = max(len(f" {lbl.ljust(label_width)} : {val}") for lbl, val in lines)
    print("┌" + "─" * inner_width + "┐")
    for lbl, val in lines:
        line = f" {lbl.ljust(label_width)} : {val}"
        print(f"│{line + ' ' * (inner_width - len(line))}│")
    print("└" + "─" * inner_width + "┘")


def convert_command(config: Config, usd: Decimal, country: str, rounding: Optional[str] = None) -> None:
    service = build_currency_service(config)
    result = service.convert_minimum_valuation(
        usd, country, RoundingMethod(rounding) if rounding else None,
    )
    _print_box([
        ("Country", country.upper()),
        ("USD amount", result.usd_amount),
        ("Currency", result.origin_currency),
        ("Exchange rate", result.exchange_rate),
        ("Converted", result.converted_amount),
        ("Rounding", result.rounding_method.value),
        ("Rate source", result.cache_source.value),
    ])
    if result.used_fallback:
        print("WARNING: fallback exchange rate used - actual rates may vary")


def validate_rate_command(
    config: Config, usd: Decimal, country: str, expected: Decimal, tolerance: Decimal
) -> bool:
    service = build_currency_service(config)
    validation = service.validate_conversion(usd, country, expected, tolerance)
    _print_box([
        ("Country", country.upper()),
        ("Expected", validation.expected_amount),
        ("Converted", validation.converted_amount),
        ("Error %", f"{validation.percentage_error:.4f}"),
        ("Tolerance %", tolerance),
        ("Status", "PASS" if validation.is_valid else "FAIL"),
    ])
    return validation.is_valid


def _log_progress(progress: BatchProgress) -> None:
    logger.info(
        f"Progress {progress.processed_units}/{progress.total_units} "
        f"({progress.successful_units} ok, {progress.failed_units} failed, "
        f"{progress.processing_speed:.1f}/min, ~{progress.estimated_time_remaining:.0f}s left)"
    )


def run_batch_command(
    config: Config,
    concurrency: Optional[int] = None,
    retry_attempts: Optional[int] = None,
    retry_delay: Optional[float] = None,
    statuses: Optional[Sequence[str]] = None,
) -> bool:
    defaults = BatchOptions.from_config(config)
    options = BatchOptions(
        concurrency=concurrency if concurrency is not None else defaults.concurrency,
        retry_attempts=retry_attempts if retry_attempts is not None else defaults.retry_attempts,
        retry_delay=retry_delay if retry_delay is not None else defaults.retry_delay,
    )
    units = load_quote_worklist(config, statuses or ("draft", "pending"))

    driver = BatchProcessingDriver(QuoteTaxProcessor(build_calculator(config)), options)
    driver.add_progress_listener(_log_progress)
    results = driver.start(units)

    summary = summarize_batch(results)
    _print_box([
        ("State", driver.state.value.upper()),
        ("Quotes", summary.total_units),
        ("Successful", summary.successful_units),
        ("Failed", summary.failed_units),
        ("Items", f"{summary.items_successful}/{summary.total_items}"),
        ("Total taxes", summary.total_taxes),
    ])
    for result in results:
        if not result.success:
            print(f"FAILED {result.unit_id} after {result.attempts} attempt(s): {result.error}")
    return summary.failed_units == 0


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        args: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    config = Config(parsed_args.env_file)
    log_level = "DEBUG" if parsed_args.verbose else config.get("log_level", "INFO")
    logger = setup_logging(level=log_level, log_file=parsed_args.log_file)

    try:
        if parsed_args.command == "convert":
            convert_command(config, parsed_args.usd, parsed_args.country, parsed_args.rounding)

        elif parsed_args.command == "validate-rate":
            if not validate_rate_command(
                config, parsed_args.usd, parsed_args.country, parsed_args.expected, parsed_args.tolerance
            ):
                return 2

        elif parsed_args.command == "run-batch":
            if not run_batch_command(
                config,
                concurrency=parsed_args.concurrency,
                retry_attempts=parsed_args.retry_attempts,
                retry_delay=parsed_args.retry_delay,
                statuses=parsed_args.statuses,
            ):
                return 2

        elif not parsed_args.command:
            parser.print_help()
            return 1

    except Exception as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
