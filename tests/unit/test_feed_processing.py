"""
Unit tests for feed validation.

Per-record failures become ProcessingErrors and never stop the batch.
"""
import threading

import pytest

from config.connection_config import parse_connection_config
from core.errors import RecordValidationError
from core.feed_processing import FeedProcessor, compute_checksums
from core.models import DataFeedRequest, FeedData, FeedType, FileProcessingStatus


def _position(i, **overrides):
    record = {"account_number": "A1", "symbol": f"SYM{i}", "quantity": 10.0 * i, "market_value": 100.0 * i}
    record.update(overrides)
    return record


@pytest.fixture
def processor():
    return FeedProcessor()


@pytest.fixture
def request_positions():
    return DataFeedRequest(FeedType.POSITIONS)


class TestProcessAndValidate:
    """Tests for batch processing."""

    def test_one_malformed_record_yields_partial_success(self, processor, rest_connection, request_positions):
        """Verifies 10 records with #5 malformed give 9 processed and 1 error at record 5."""
        records = [_position(i) for i in range(1, 11)]
        records[4] = _position(5, quantity="lots")

        feed = processor.process_and_validate(FeedData(records, {}), rest_connection, request_positions)

        assert feed.record_count == 10
        assert feed.processed_record_count == 9
        assert feed.error_record_count == 1
        assert feed.processing_status == FileProcessingStatus.PARTIAL_SUCCESS
        error = feed.processing_errors[0]
        assert error.record_number == 5
        assert error.field_name == "quantity"
        assert error.severity == "ERROR"
        assert error.resolved is False

    def test_all_valid_is_completed(self, processor, rest_connection, request_positions):
        """Verifies a clean batch is COMPLETED with checksums."""
        feed = processor.process_and_validate(
            FeedData([_position(1), _position(2)], {"filesProcessed": ["a.txt", "b.txt"]}),
            rest_connection,
            request_positions,
        )

        assert feed.processing_status == FileProcessingStatus.COMPLETED
        assert feed.file_name == "a.txt, b.txt"
        assert feed.checksums["recordCount"] == 2
        assert feed.checksums["totalAmount"] == 300.0
        assert feed.metadata["cancelled"] is False
        assert feed.processing_end_time is not None

    def test_non_dict_record_is_an_error(self, processor, rest_connection, request_positions):
        """Verifies records that are not objects are reported with their raw value."""
        feed = processor.process_and_validate(
            FeedData([_position(1), "garbage"], {}), rest_connection, request_positions
        )

        assert feed.error_record_count == 1
        assert feed.processing_errors[0].raw_data == {"value": "'garbage'"}

    def test_cancellation_keeps_partial_state(self, processor, rest_connection, request_positions):
        """Verifies a set cancel flag stops before the next record."""
        cancel = threading.Event()
        cancel.set()

        feed = processor.process_and_validate(
            FeedData([_position(1), _position(2)], {}), rest_connection, request_positions, cancel
        )

        assert feed.processed_record_count == 0
        assert feed.metadata["cancelled"] is True
        assert feed.processing_status == FileProcessingStatus.PARTIAL_SUCCESS


class TestValidateRecord:
    """Tests for single-record validation rules."""

    def test_missing_required_field_raises(self, processor, rest_connection, request_positions):
        """Verifies position records need a symbol."""
        with pytest.raises(RecordValidationError) as exc_info:
            processor.validate_record({"account_number": "A1", "quantity": 1}, rest_connection, request_positions)

        assert exc_info.value.field_name == "symbol"

    def test_request_account_fills_missing_account(self, processor, rest_connection):
        """Verifies account-scoped requests supply the account number."""
        request = DataFeedRequest(FeedType.POSITIONS, account_number="ACC9")

        record = processor.validate_record({"symbol": "AAPL", "quantity": "5"}, rest_connection, request)

        assert record["account_number"] == "ACC9"
        assert record["quantity"] == 5.0

    def test_cash_defaults_currency(self, processor, rest_connection):
        """Verifies cash balances default to USD."""
        record = processor.validate_record(
            {"account_number": "A1", "balance": 10}, rest_connection, DataFeedRequest(FeedType.CASH_BALANCES)
        )

        assert record["currency"] == "USD"

    def test_non_finite_number_rejected(self, processor, rest_connection, request_positions):
        """Verifies NaN and infinity are rejected."""
        with pytest.raises(RecordValidationError, match="not finite"):
            processor.validate_record(_position(1, market_value=float("nan")), rest_connection, request_positions)

    def test_data_mapping_renames_and_coerces(self, processor, connection_factory, request_positions):
        """Verifies configured field mappings apply before canonical checks."""
        config = parse_connection_config({"dataMapping": {
            "positionMapping": [
                {"sourceField": "Ticker", "targetField": "symbol", "required": True},
                {"sourceField": "Units", "targetField": "quantity", "dataType": "number"},
                {"sourceField": "AsOf", "targetField": "as_of_date", "dataType": "date"},
            ],
        }})
        connection = connection_factory(config)

        record = processor.validate_record(
            {"account_number": "A1", "Ticker": "AAPL", "Units": "12.5", "AsOf": "2024-01-02"},
            connection,
            request_positions,
        )

        assert record["symbol"] == "AAPL"
        assert record["quantity"] == 12.5
        assert str(record["as_of_date"]) == "2024-01-02"

    def test_required_mapping_missing_raises(self, processor, connection_factory, request_positions):
        """Verifies a required mapped source field must be present."""
        config = parse_connection_config({"dataMapping": {
            "positionMapping": [{"sourceField": "Ticker", "targetField": "symbol", "required": True}],
        }})

        with pytest.raises(RecordValidationError) as exc_info:
            processor.validate_record({"account_number": "A1", "quantity": 1}, connection_factory(config), request_positions)

        assert exc_info.value.field_name == "Ticker"

    def test_mapping_coercion_failure_raises(self, processor, connection_factory, request_positions):
        """Verifies a mapped value that cannot be coerced is rejected."""
        config = parse_connection_config({"dataMapping": {
            "positionMapping": [{"sourceField": "AsOf", "targetField": "as_of_date", "dataType": "date"}],
        }})

        with pytest.raises(RecordValidationError, match="not a valid date"):
            processor.validate_record(_position(1, AsOf="01/02/2024"), connection_factory(config), request_positions)


class TestChecksums:
    """Tests for feed checksums."""

    def test_checksum_is_order_sensitive_and_stable(self):
        """Verifies identical records hash identically."""
        records = [_position(1), _position(2)]

        assert compute_checksums(records, FeedType.POSITIONS) == compute_checksums(list(records), FeedType.POSITIONS)
        assert compute_checksums(records[::-1], FeedType.POSITIONS)["sha256"] != \
            compute_checksums(records, FeedType.POSITIONS)["sha256"]

    def test_feeds_without_amount_total_zero(self):
        """Verifies feeds without an amount field total 0."""
        assert compute_checksums([{"symbol": "X"}], FeedType.CORPORATE_ACTIONS)["totalAmount"] == 0.0
