"""
Unit tests for custodian file parsers.

Covers fixed-width offsets, header and blank-line skipping, bad-line
tolerance and CSV exports.
"""
from datetime import date

import pytest

from core.errors import RecordValidationError
from core.models import FeedType
from processors.csv_processor import CSVProcessor
from processors.fixed_width_processor import FixedWidthProcessor, format_record


def _position_line(account="ACC0000001", symbol="AAPL", cusip="037833100", qty="100.5", price="189.25", value="19019.63"):
    return f"{account:<10}{symbol:<10}{cusip:<9}{qty:<13}{price:<13}{value:<13}"


class TestFixedWidthParseLine:
    """Tests for single-line parsing."""

    def test_parses_position_offsets(self):
        """Verifies each position column is read from its offset."""
        record = FixedWidthProcessor(FeedType.POSITIONS).parse_line(_position_line())

        assert record == {
            "account_number": "ACC0000001",
            "symbol": "AAPL",
            "cusip": "037833100",
            "quantity": 100.5,
            "unit_price": 189.25,
            "market_value": 19019.63,
        }

    def test_parses_transaction_trade_date(self):
        """Verifies YYYYMMDD trade dates become dates."""
        line = f"{'ACC0000001':<10}{'TXN00000001':<15}{'MSFT':<10}{'BUY':<5}{'20':<13}{'401.5':<13}20240102"

        record = FixedWidthProcessor(FeedType.TRANSACTIONS).parse_line(line)

        assert record["transaction_id"] == "TXN00000001"
        assert record["transaction_type"] == "BUY"
        assert record["trade_date"] == date(2024, 1, 2)

    def test_bad_number_raises_with_field(self):
        """Verifies a non-numeric quantity names the failing field."""
        with pytest.raises(RecordValidationError) as exc_info:
            FixedWidthProcessor(FeedType.POSITIONS).parse_line(_position_line(qty="abc"))

        assert exc_info.value.field_name == "quantity"

    def test_missing_symbol_raises(self):
        """Verifies blank key columns are rejected."""
        with pytest.raises(RecordValidationError):
            FixedWidthProcessor(FeedType.POSITIONS).parse_line(_position_line(symbol=""))


class TestFixedWidthReadLines:
    """Tests for whole-file reading."""

    def test_skips_header_and_blank_lines(self):
        """Verifies HDR and blank lines produce no records."""
        lines = ["HDRPOSITIONS        20240101\n", "\n", _position_line() + "\n", _position_line(symbol="MSFT") + "\r\n"]

        records = list(FixedWidthProcessor(FeedType.POSITIONS).read_lines(lines))

        assert [r["symbol"] for r in records] == ["AAPL", "MSFT"]

    def test_bad_line_is_dropped_and_logged(self, caplog):
        """Verifies one malformed line does not stop the file."""
        lines = [_position_line(), _position_line(price="n/a"), _position_line(symbol="MSFT")]

        records = list(FixedWidthProcessor(FeedType.POSITIONS).read_lines(lines))

        assert len(records) == 2
        assert "Dropping line 2" in caplog.text

    def test_feed_without_layout_yields_nothing(self, caplog):
        """Verifies feeds without a fixed-width layout are skipped."""
        records = list(FixedWidthProcessor(FeedType.CASH_BALANCES).read_lines([_position_line()]))

        assert records == []
        assert "No fixed-width layout" in caplog.text

    def test_read_records_from_file(self, tmp_path):
        """Verifies records are read from a file written by format_record."""
        path = tmp_path / "POS_20240101_A.txt"
        record = {
            "account_number": "ACC0000001", "symbol": "GOOGL", "cusip": "02079K305",
            "quantity": 310.0, "unit_price": 141.8, "market_value": 43958.0,
        }
        path.write_text("HDR\n" + format_record(record, FeedType.POSITIONS) + "\n")

        records = list(FixedWidthProcessor(FeedType.POSITIONS).read_records(str(path)))

        assert records == [record]

    def test_undecodable_line_is_dropped(self, tmp_path, caplog):
        """Verifies invalid UTF-8 in one line does not stop the rest of the file."""
        path = tmp_path / "POS_20240101_A.txt"
        path.write_bytes(
            _position_line().encode() + b"\n"
            + b"PER0009999\xff\xfeBAD" + b" " * 50 + b"\n"
            + _position_line(symbol="MSFT").encode() + b"\n"
        )

        records = list(FixedWidthProcessor(FeedType.POSITIONS).read_records(str(path)))

        assert [r["symbol"] for r in records] == ["AAPL", "MSFT"]
        assert "Dropping line 2: undecodable bytes" in caplog.text


class TestFormatRecord:
    """Tests for fixed-width rendering."""

    def test_values_are_left_justified_to_width(self):
        """Verifies every column is padded to its width."""
        line = format_record(
            {"account_number": "A1", "symbol": "KO", "cusip": "", "quantity": 1.0, "unit_price": 2.0, "market_value": 2.0},
            FeedType.POSITIONS,
        )

        assert len(line) == 68
        assert line[10:20] == "KO        "

    def test_too_wide_value_raises(self):
        """Verifies overflowing a column is an error."""
        with pytest.raises(ValueError, match="exceeds column width"):
            format_record(
                {"account_number": "A" * 11, "symbol": "KO", "cusip": "", "quantity": 1.0,
                 "unit_price": 2.0, "market_value": 2.0},
                FeedType.POSITIONS,
            )


class TestCSVProcessor:
    """Tests for CSV custodian exports."""

    def test_reads_positions_after_header(self, tmp_path):
        """Verifies the header row is skipped and numerics converted."""
        path = tmp_path / "positions_20240101.csv"
        path.write_text(
            "symbol,cusip,description,quantity,unit_price,market_value,cost_basis\n"
            "AAPL,037833100,Apple Inc,100,189.25,18925.00,15000\n"
        )

        records = list(CSVProcessor(FeedType.POSITIONS).read_records(str(path)))

        assert records == [{
            "symbol": "AAPL", "cusip": "037833100", "description": "Apple Inc",
            "quantity": 100.0, "unit_price": 189.25, "market_value": 18925.0, "cost_basis": 15000.0,
        }]

    def test_transaction_dates_are_parsed(self, tmp_path):
        """Verifies ISO trade dates become dates."""
        path = tmp_path / "transactions_20240101.csv"
        path.write_text("header\nT1,MSFT,BUY,2024-01-02,10,400,4000\n")

        records = list(CSVProcessor(FeedType.TRANSACTIONS).read_records(str(path)))

        assert records[0]["trade_date"] == date(2024, 1, 2)

    def test_short_and_bad_rows_are_dropped(self, tmp_path, caplog):
        """Verifies malformed rows are logged and skipped."""
        path = tmp_path / "balances_20240101.csv"
        path.write_text(
            "account_number,currency,balance,available_balance\n"
            "ACC1,USD,1000.50,900\n"
            "ACC2,USD\n"
            "ACC3,USD,abc,1\n"
            "\n"
            "ACC4,EUR,50,50\n"
        )

        records = list(CSVProcessor(FeedType.CASH_BALANCES).read_records(str(path)))

        assert [r["account_number"] for r in records] == ["ACC1", "ACC4"]
        assert "Dropping row 3" in caplog.text
        assert "Dropping row 4" in caplog.text

    def test_undecodable_row_is_dropped(self, tmp_path, caplog):
        """Verifies a row with invalid UTF-8 is dropped and later rows still load."""
        path = tmp_path / "positions_20240101.csv"
        path.write_bytes(
            b"symbol,cusip,description,quantity,unit_price,market_value,cost_basis\n"
            b"AAPL,037833100,Apple Inc,100,189.25,18925.00,15000\n"
            b"BAD,000000000,Caf\xe9 \xff,1,1,1,1\n"
            b"MSFT,594918104,Microsoft,50,400,20000,18000\n"
        )

        records = list(CSVProcessor(FeedType.POSITIONS).read_records(str(path)))

        assert [r["symbol"] for r in records] == ["AAPL", "MSFT"]
        assert "Dropping row 3" in caplog.text
