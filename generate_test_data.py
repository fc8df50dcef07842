"""
Generate test data for a Pershing-style fixed-width custodian feed and the
matching internal portfolio snapshot in MongoDB.

This script creates:
- POS_<date>_01.txt: 10 position lines (7 matched, 2 mismatched, 1 custodian-only)
- TXN_<date>_01.txt: 6 transaction lines (5 matched, 1 mismatched)
- MongoDB: 10 positions (7 matched, 2 mismatched, 1 portfolio-only),
  6 transactions and 1 cash balance for portfolio TEST-PORTFOLIO

Expected position reconciliation:
- Matched: 7
- Unmatched: 4 (2 quantity mismatches, 1 custodian-only, 1 portfolio-only)

Usage:
    python generate_test_data.py [output_dir]

Upload the generated files to the SFTP directory configured on the Pershing
connection.
"""

import os
import sys
from datetime import datetime, timedelta

from pymongo import MongoClient

from config.settings import settings
from core.models import FeedType
from processors.fixed_width_processor import format_record

PORTFOLIO_ID = "TEST-PORTFOLIO"
ACCOUNT = "PER0001234"

# (symbol, cusip, quantity, unit_price)
MATCHED_POSITIONS = [
    ("AAPL", "037833100", 1500.0, 189.25),
    ("MSFT", "594918104", 820.0, 402.1),
    ("GOOGL", "02079K305", 310.0, 141.8),
    ("AMZN", "023135106", 450.0, 178.35),
    ("JPM", "46625H100", 600.0, 195.6),
    ("JNJ", "478160104", 275.0, 158.4),
    ("XOM", "30231G102", 930.0, 104.75),
]

# (symbol, cusip, portfolio_quantity, custodian_quantity, unit_price)
MISMATCHED_POSITIONS = [
    ("NVDA", "67066G104", 120.0, 125.0, 875.5),
    ("PG", "742718109", 410.0, 400.0, 162.3),
]

CUSTODIAN_ONLY_POSITIONS = [("KO", "191216100", 1000.0, 61.2)]
PORTFOLIO_ONLY_POSITIONS = [("PFE", "717081103", 2200.0, 28.9)]

# (transaction_id, symbol, type, quantity, unit_price)
MATCHED_TRANSACTIONS = [
    ("TXN0000000001", "AAPL", "BUY", 100.0, 188.5),
    ("TXN0000000002", "MSFT", "BUY", 20.0, 401.0),
    ("TXN0000000003", "XOM", "SELL", 70.0, 105.1),
    ("TXN0000000004", "JPM", "BUY", 50.0, 194.8),
    ("TXN0000000005", "JNJ", "SELL", 25.0, 158.9),
]
# (transaction_id, symbol, type, portfolio_quantity, custodian_quantity, unit_price)
MISMATCHED_TRANSACTIONS = [("TXN0000000006", "NVDA", "BUY", 5.0, 10.0, 870.0)]


def position(symbol, cusip, quantity, unit_price):
    return {
        "account_number": ACCOUNT,
        "symbol": symbol,
        "cusip": cusip,
        "quantity": quantity,
        "unit_price": unit_price,
        "market_value": round(quantity * unit_price, 2),
    }


def transaction(transaction_id, symbol, transaction_type, quantity, unit_price, trade_date):
    return {
        "account_number": ACCOUNT,
        "transaction_id": transaction_id,
        "symbol": symbol,
        "transaction_type": transaction_type,
        "quantity": quantity,
        "unit_price": unit_price,
        "trade_date": trade_date,
    }


def write_feed(path, records, feed_type):
    """Write an HDR line followed by one fixed-width line per record."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(f"HDR{feed_type.value:<17}{datetime.now():%Y%m%d%H%M%S}\n")
        for record in records:
            handle.write(format_record(record, feed_type) + "\n")
    print(f"Wrote {len(records)} {feed_type.value} lines to {path}")


def generate_custodian_files(output_dir, as_of):
    stamp = as_of.strftime("%Y%m%d")

    positions = [position(*p) for p in MATCHED_POSITIONS]
    positions += [position(s, c, custodian_qty, price) for s, c, _, custodian_qty, price in MISMATCHED_POSITIONS]
    positions += [position(*p) for p in CUSTODIAN_ONLY_POSITIONS]
    write_feed(os.path.join(output_dir, f"POS_{stamp}_01.txt"), positions, FeedType.POSITIONS)

    trade_date = as_of.date() - timedelta(days=1)
    transactions = [transaction(*t, trade_date) for t in MATCHED_TRANSACTIONS]
    transactions += [
        transaction(t_id, s, t_type, custodian_qty, price, trade_date)
        for t_id, s, t_type, _, custodian_qty, price in MISMATCHED_TRANSACTIONS
    ]
    write_feed(os.path.join(output_dir, f"TXN_{stamp}_01.txt"), transactions, FeedType.TRANSACTIONS)


def generate_portfolio_snapshot(as_of):
    """Build portfolio-side documents in the shape MongoPortfolioStore reads."""
    positions = [position(*p) for p in MATCHED_POSITIONS]
    positions += [position(s, c, portfolio_qty, price) for s, c, portfolio_qty, _, price in MISMATCHED_POSITIONS]
    positions += [position(*p) for p in PORTFOLIO_ONLY_POSITIONS]
    for doc in positions:
        doc.update({"portfolio_id": PORTFOLIO_ID, "as_of_date": as_of})

    trade_date = as_of - timedelta(days=1)
    transactions = [transaction(*t, trade_date) for t in MATCHED_TRANSACTIONS]
    transactions += [
        transaction(t_id, s, t_type, portfolio_qty, price, trade_date)
        for t_id, s, t_type, portfolio_qty, _, price in MISMATCHED_TRANSACTIONS
    ]
    for doc in transactions:
        doc["portfolio_id"] = PORTFOLIO_ID

    cash = [{
        "portfolio_id": PORTFOLIO_ID,
        "account_number": ACCOUNT,
        "currency": "USD",
        "balance": 125000.0,
        "available_balance": 118500.0,
        "as_of_date": as_of,
    }]
    return positions, transactions, cash


def insert_portfolio_snapshot(positions, transactions, cash):
    """Replace the test portfolio's documents in MongoDB."""
    client = MongoClient(settings.MONGO_URI, serverSelectionTimeoutMS=5000)
    try:
        client.admin.command("ping")
        db = client[settings.DB_NAME]
        for name, docs in (
            (settings.PORTFOLIO_POSITIONS_COLLECTION, positions),
            (settings.PORTFOLIO_TRANSACTIONS_COLLECTION, transactions),
            (settings.PORTFOLIO_CASH_COLLECTION, cash),
        ):
            deleted = db[name].delete_many({"portfolio_id": PORTFOLIO_ID}).deleted_count
            db[name].insert_many(docs)
            print(f"{settings.DB_NAME}.{name}: removed {deleted}, inserted {len(docs)}")
    finally:
        client.close()


def main():
    output_dir = sys.argv[1] if len(sys.argv) > 1 else "sftp_data/uploads"
    as_of = datetime.combine(datetime.now().date(), datetime.min.time())

    print("=" * 70)
    print("GENERATING CUSTODIAN TEST DATA")
    print("=" * 70)
    generate_custodian_files(output_dir, as_of)
    insert_portfolio_snapshot(*generate_portfolio_snapshot(as_of))
    print("=" * 70)
    print(f"Expected POSITION result: {len(MATCHED_POSITIONS)} matched, "
          f"{len(MISMATCHED_POSITIONS) + len(CUSTODIAN_ONLY_POSITIONS) + len(PORTFOLIO_ONLY_POSITIONS)} unmatched")
    print("=" * 70)


if __name__ == "__main__":
    main()
