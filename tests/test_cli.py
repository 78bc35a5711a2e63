"""Tests for the command-line interface."""

from decimal import Decimal
from unittest.mock import patch

import pytest

from customs_tax import __version__
from customs_tax.batch.quotes import QuoteWorkUnit
from customs_tax.cli import create_parser, main
from customs_tax.tax_calculation.currency import CurrencyConversionService
from customs_tax.tax_calculation.models import QuoteItem
from customs_tax.tax_calculation.sources import StaticExchangeRateSource


@pytest.fixture
def static_service():
    return CurrencyConversionService(StaticExchangeRateSource({"NP": ("NPR", "133.0")}))


class TestParser:
    """Argument parsing."""

    def test_convert_arguments(self):
        args = create_parser().parse_args(["convert", "--usd", "10", "--country", "NP", "--rounding", "down"])

        assert args.command == "convert"
        assert args.usd == Decimal("10")
        assert args.rounding == "down"

    def test_run_batch_statuses(self):
        args = create_parser().parse_args(["run-batch", "--status", "draft", "--status", "approved"])
        assert args.statuses == ["draft", "approved"]
        assert args.concurrency is None

    def test_invalid_rounding(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["convert", "--usd", "10", "--country", "NP", "--rounding", "sideways"])


class TestMain:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert f"Customs Tax Engine {__version__}" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_convert(self, capsys, static_service):
        with patch("customs_tax.cli.build_currency_service", return_value=static_service):
            assert main(["convert", "--usd", "10", "--country", "np"]) == 0

        out = capsys.readouterr().out
        assert "1330" in out
        assert "NPR" in out
        assert "WARNING" not in out

    def test_convert_with_fallback(self, capsys, static_service):
        with patch("customs_tax.cli.build_currency_service", return_value=static_service):
            assert main(["convert", "--usd", "10", "--country", "IN"]) == 0

        out = capsys.readouterr().out
        assert "830" in out
        assert "fallback exchange rate used" in out

    def test_validate_rate_pass(self, capsys, static_service):
        with patch("customs_tax.cli.build_currency_service", return_value=static_service):
            code = main(["validate-rate", "--usd", "10", "--country", "NP", "--expected", "1330"])

        assert code == 0
        assert "PASS" in capsys.readouterr().out

    def test_validate_rate_fail(self, capsys, static_service):
        with patch("customs_tax.cli.build_currency_service", return_value=static_service):
            code = main(["validate-rate", "--usd", "10", "--country", "NP", "--expected", "1200"])

        assert code == 2
        assert "FAIL" in capsys.readouterr().out

    def test_command_error_returns_1(self):
        with patch("customs_tax.cli.build_currency_service", side_effect=ValueError("DB_CONNECTION_URL is required")):
            assert main(["convert", "--usd", "10", "--country", "NP"]) == 1

    def test_run_batch(self, capsys, calculator, kurta_item, mobile_item, india_context):
        worklist = [QuoteWorkUnit(unit_id="Q-1", context=india_context, items=(kurta_item, mobile_item))]

        with patch("customs_tax.cli.load_quote_worklist", return_value=worklist) as mock_load, \
                patch("customs_tax.cli.build_calculator", return_value=calculator):
            code = main(["run-batch", "--concurrency", "2", "--retry-delay", "0"])

        assert code == 0
        mock_load.assert_called_once()
        assert mock_load.call_args[0][1] == ("draft", "pending")
        out = capsys.readouterr().out
        assert "COMPLETED" in out
        assert "33439.60" in out

    def test_run_batch_with_failures(self, capsys, calculator, kurta_item, india_context):
        unknown = QuoteItem(id="x1", name="Mystery", price_origin_currency=10, classification_code="9999")
        worklist = [
            QuoteWorkUnit(unit_id="Q-1", context=india_context, items=(kurta_item,)),
            QuoteWorkUnit(unit_id="Q-2", context=india_context, items=(unknown,)),
        ]

        with patch("customs_tax.cli.load_quote_worklist", return_value=worklist), \
                patch("customs_tax.cli.build_calculator", return_value=calculator):
            code = main(["run-batch", "--retry-delay", "0", "--status", "draft"])

        assert code == 2
        assert "FAILED Q-2 after 1 attempt(s): x1: HSN code not found: 9999" in capsys.readouterr().out
