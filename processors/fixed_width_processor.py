"""
Fixed-width custodian file parsing.

Column offsets are zero-based, end-exclusive. Lines starting with ``HDR``
and blank lines are skipped; a line that cannot be parsed (including one
with undecodable bytes) is logged and dropped without stopping the file.
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from core.errors import RecordValidationError
from core.models import FeedType

logger = logging.getLogger(__name__)

Column = Tuple[str, int, int, Callable]
UNDECODABLE = "\ufffd"


def _text(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError("empty value")
    return value


def _number(raw: str) -> float:
    return float(raw.strip())


def _yyyymmdd(raw: str) -> date:
    return datetime.strptime(raw.strip(), "%Y%m%d").date()


POSITION_LAYOUT: List[Column] = [
    ("account_number", 0, 10, _text),
    ("symbol", 10, 20, _text),
    ("cusip", 20, 29, str.strip),
    ("quantity", 29, 42, _number),
    ("unit_price", 42, 55, _number),
    ("market_value", 55, 68, _number),
]

TRANSACTION_LAYOUT: List[Column] = [
    ("account_number", 0, 10, _text),
    ("transaction_id", 10, 25, _text),
    ("symbol", 25, 35, _text),
    ("transaction_type", 35, 40, _text),
    ("quantity", 40, 53, _number),
    ("unit_price", 53, 66, _number),
    ("trade_date", 66, 74, _yyyymmdd),
]

LAYOUTS: Dict[FeedType, List[Column]] = {
    FeedType.POSITIONS: POSITION_LAYOUT,
    FeedType.TRANSACTIONS: TRANSACTION_LAYOUT,
}


class FixedWidthProcessor:
    def __init__(self, feed_type: FeedType):
        self.feed_type = feed_type
        self.layout: Optional[List[Column]] = LAYOUTS.get(feed_type)

    def parse_line(self, line: str) -> Dict:
        if self.layout is None:
            raise RecordValidationError(f"No fixed-width layout for {self.feed_type.value}")
        if UNDECODABLE in line:
            raise RecordValidationError("undecodable bytes")

        record = {}
        for name, start, end, convert in self.layout:
            try:
                record[name] = convert(line[start:end])
            except ValueError as e:
                raise RecordValidationError(f"Invalid {name} '{line[start:end].strip()}': {e}", name) from e
        return record

    def read_lines(self, lines) -> Iterator[Dict]:
        if self.layout is None:
            logger.warning(f"No fixed-width layout for {self.feed_type.value}, skipping file")
            return

        for line_number, line in enumerate(lines, start=1):
            line = line.rstrip("\r\n")
            if not line.strip() or line.startswith("HDR"):
                continue
            try:
                yield self.parse_line(line)
            except RecordValidationError as e:
                logger.warning(f"Dropping line {line_number}: {e}")

    def read_records(self, path: str) -> Iterator[Dict]:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            yield from self.read_lines(handle)


def format_record(record: Dict, feed_type: FeedType) -> str:
    """Render a record into its fixed-width line."""
    layout = LAYOUTS[feed_type]
    line = ""
    for name, start, end, _ in layout:
        value = record[name]
        if isinstance(value, date):
            text = value.strftime("%Y%m%d")
        elif isinstance(value, float):
            text = repr(value)
        else:
            text = str(value)

        width = end - start
        if len(text) > width:
            raise ValueError(f"{name} value '{text}' exceeds column width {width}")
        line += text.ljust(width)
    return line
