"""
Feed validation and normalization.

Each record is validated on its own; a bad record becomes a
``ProcessingError`` and the batch carries on.
"""

import hashlib
import json
import logging
import math
import threading
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from core.errors import RecordValidationError
from core.models import (
    CustodianConnection,
    DataFeedRequest,
    FeedData,
    FeedType,
    FileProcessingStatus,
    ProcessedFeed,
    ProcessingError,
    new_id,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    FeedType.POSITIONS: ("account_number", "symbol", "quantity"),
    FeedType.TRANSACTIONS: ("transaction_id", "quantity"),
    FeedType.CASH_BALANCES: ("account_number", "balance"),
    FeedType.CORPORATE_ACTIONS: ("symbol",),
    FeedType.SETTLEMENTS: ("transaction_id",),
}

NUMERIC_FIELDS = (
    "quantity", "unit_price", "market_value", "cost_basis", "unrealized_gain_loss",
    "gross_amount", "net_amount", "fees", "commission",
    "balance", "available_balance", "pending_credits", "pending_debits",
)

AMOUNT_FIELDS = {
    FeedType.POSITIONS: "market_value",
    FeedType.TRANSACTIONS: "net_amount",
    FeedType.CASH_BALANCES: "balance",
}

MAPPING_FIELDS = {
    FeedType.POSITIONS: "position_mapping",
    FeedType.TRANSACTIONS: "transaction_mapping",
    FeedType.CASH_BALANCES: "cash_balance_mapping",
    FeedType.CORPORATE_ACTIONS: "corporate_action_mapping",
}


def _coerce(value: Any, data_type: str, date_format: str) -> Any:
    if data_type == "number":
        return float(value)
    if data_type == "date":
        if isinstance(value, (date, datetime)):
            return value
        return datetime.strptime(str(value), date_format).date()
    if data_type == "boolean":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("true", "1", "y", "yes")
    return str(value)


def compute_checksums(records: List[Dict], feed_type: FeedType) -> Dict[str, Any]:
    canonical = json.dumps(records, sort_keys=True, default=str).encode("utf-8")
    amount_field = AMOUNT_FIELDS.get(feed_type)
    total = sum(r.get(amount_field) or 0.0 for r in records) if amount_field else 0.0
    return {
        "recordCount": len(records),
        "sha256": hashlib.sha256(canonical).hexdigest(),
        "totalAmount": round(total, 2),
    }


class FeedProcessor:
    def validate_record(self, record: Any, connection: CustodianConnection, request: DataFeedRequest) -> Dict:
        """Return the normalized record or raise RecordValidationError."""
        if not isinstance(record, dict):
            raise RecordValidationError(f"Record must be an object, got {type(record).__name__}")

        feed_type = FeedType(request.feed_type)
        normalized = dict(record)
        if request.account_number and not normalized.get("account_number"):
            normalized["account_number"] = request.account_number
        if feed_type == FeedType.CASH_BALANCES:
            normalized.setdefault("currency", "USD")

        data_mapping = connection.connection_config.data_mapping
        for mapping in getattr(data_mapping, MAPPING_FIELDS.get(feed_type, ""), None) or []:
            value = record.get(mapping.source_field)
            if value is None or value == "":
                if mapping.required:
                    raise RecordValidationError(f"Missing required field {mapping.source_field}", mapping.source_field)
                continue
            try:
                normalized[mapping.target_field] = _coerce(value, mapping.data_type, data_mapping.date_format)
            except (TypeError, ValueError) as e:
                raise RecordValidationError(
                    f"Field {mapping.source_field} is not a valid {mapping.data_type}: {value!r}", mapping.source_field
                ) from e

        for name in REQUIRED_FIELDS[feed_type]:
            if normalized.get(name) is None or normalized.get(name) == "":
                raise RecordValidationError(f"Missing required field {name}", name)

        for name in NUMERIC_FIELDS:
            if normalized.get(name) is None:
                continue
            try:
                number = float(normalized[name])
            except (TypeError, ValueError) as e:
                raise RecordValidationError(f"Field {name} is not numeric: {normalized[name]!r}", name) from e
            if not math.isfinite(number):
                raise RecordValidationError(f"Field {name} is not finite", name)
            normalized[name] = number

        return normalized

    def process_and_validate(
        self,
        raw_feed: FeedData,
        connection: CustodianConnection,
        request: DataFeedRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProcessedFeed:
        feed_type = FeedType(request.feed_type)
        files = raw_feed.metadata.get("filesProcessed")
        feed = ProcessedFeed(
            id=new_id(),
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            feed_type=feed_type,
            processing_status=FileProcessingStatus.PROCESSING,
            file_name=", ".join(files) if files else None,
            record_count=len(raw_feed.records),
            metadata=dict(raw_feed.metadata),
        )

        cancelled = False
        for index, record in enumerate(raw_feed.records):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.warning(f"Feed {feed.id} cancelled after {index} of {feed.record_count} records")
                break
            try:
                feed.records.append(self.validate_record(record, connection, request))
                feed.processed_record_count += 1
            except RecordValidationError as e:
                feed.error_record_count += 1
                feed.processing_errors.append(ProcessingError(
                    record_number=index + 1,
                    error_message=str(e),
                    field_name=e.field_name,
                    raw_data=record if isinstance(record, dict) else {"value": repr(record)},
                ))
                logger.debug(f"Record {index + 1} of feed {feed.id} failed validation: {e}")

        feed.processing_end_time = datetime.now()
        feed.checksums = compute_checksums(feed.records, feed_type)
        feed.metadata["cancelled"] = cancelled
        if feed.error_record_count == 0 and not cancelled:
            feed.processing_status = FileProcessingStatus.COMPLETED
        else:
            feed.processing_status = FileProcessingStatus.PARTIAL_SUCCESS

        logger.info(
            f"Processed feed {feed.id}: {feed.processed_record_count} valid, "
            f"{feed.error_record_count} errors, status {feed.processing_status.value}"
        )
        return feed
