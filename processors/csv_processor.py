import csv
import logging
from datetime import datetime
from typing import Dict, Iterator

from core.models import FeedType

logger = logging.getLogger(__name__)

POSITION_COLUMNS = ["symbol", "cusip", "description", "quantity", "unit_price", "market_value", "cost_basis"]
TRANSACTION_COLUMNS = [
    "transaction_id", "symbol", "transaction_type", "trade_date", "quantity", "unit_price", "net_amount",
]
CASH_BALANCE_COLUMNS = ["account_number", "currency", "balance", "available_balance"]

COLUMNS = {
    FeedType.POSITIONS: POSITION_COLUMNS,
    FeedType.TRANSACTIONS: TRANSACTION_COLUMNS,
    FeedType.CASH_BALANCES: CASH_BALANCE_COLUMNS,
}

NUMERIC_FIELDS = {"quantity", "unit_price", "market_value", "cost_basis", "net_amount", "balance", "available_balance"}
UNDECODABLE = "\ufffd"


class CSVProcessor:
    """Reads comma-separated custodian exports (header row first)."""

    def __init__(self, feed_type: FeedType):
        self.feed_type = feed_type
        self.columns = COLUMNS.get(feed_type)

    def _convert(self, row) -> Dict:
        if len(row) < len(self.columns):
            raise ValueError(f"expected {len(self.columns)} columns, got {len(row)}")

        if any(UNDECODABLE in cell for cell in row):
            raise ValueError("undecodable bytes")

        record = {}
        for name, raw in zip(self.columns, row):
            raw = raw.strip()
            if name in NUMERIC_FIELDS:
                record[name] = float(raw)
            elif name == "trade_date":
                record[name] = datetime.strptime(raw, "%Y-%m-%d").date()
            else:
                record[name] = raw
        return record

    def read_records(self, path: str) -> Iterator[Dict]:
        if self.columns is None:
            logger.warning(f"No CSV layout for {self.feed_type.value}, skipping {path}")
            return

        with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            reader = csv.reader(handle)
            next(reader, None)
            for row_number, row in enumerate(reader, start=2):
                if not row:
                    continue
                try:
                    yield self._convert(row)
                except ValueError as e:
                    logger.warning(f"Dropping row {row_number} of {path}: {e}")
