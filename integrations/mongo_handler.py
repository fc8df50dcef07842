from datetime import date, datetime, time
from dataclasses import asdict
from enum import Enum
from pymongo import MongoClient
from typing import Any, Dict, List, Optional
from contextlib import contextmanager
import uuid
import logging

from config.connection_config import SECRET_CREDENTIAL_FIELDS, parse_connection_config
from core.events import FieldEncryptor
from core.models import (
    ConnectionErrorEntry,
    ConnectionStatus,
    ConnectionType,
    CustodianConnection,
    CustodianType,
    ProcessedFeed,
    ReconciliationResponse,
)

logger = logging.getLogger(__name__)

SENSITIVE_RECORD_FIELDS = ("account_number", "ssn", "routing_number")


@contextmanager
def get_mongo_connection(mongo_uri: str):
    client = None
    try:
        client = MongoClient(mongo_uri)
        yield client
    finally:
        if client:
            client.close()


def to_document(value: Any) -> Any:
    """Convert dataclass output into BSON-encodable values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, dict):
        return {k: to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document(v) for v in value]
    return value


def encrypt_record(record: Optional[Dict], encryptor: FieldEncryptor) -> Optional[Dict]:
    if record is None:
        return None
    encrypted = dict(record)
    for name in SENSITIVE_RECORD_FIELDS:
        if encrypted.get(name) not in (None, ""):
            encrypted[name] = encryptor.encrypt_field(str(encrypted[name]))
    return encrypted


def decrypt_record(record: Dict, encryptor: FieldEncryptor) -> Dict:
    decrypted = dict(record)
    for name in SENSITIVE_RECORD_FIELDS:
        if isinstance(decrypted.get(name), dict):
            decrypted[name] = encryptor.decrypt_field(decrypted[name])
    return decrypted


class CustodianRepository:
    """Mongo persistence for connections, feeds and reconciliation output."""

    def __init__(self, mongo_uri: str, db_name: str, encryptor: FieldEncryptor, collections):
        self.mongo_uri = mongo_uri
        self.db_name = db_name
        self.encryptor = encryptor
        self.collections = collections

    def _collection(self, client, name: str):
        return client[self.db_name][name]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def save_connection(self, connection: CustodianConnection) -> None:
        config = connection.connection_config.model_dump(by_alias=True)
        credentials = config["authentication"]["credentials"]
        for name in SECRET_CREDENTIAL_FIELDS:
            alias = _camel(name)
            if credentials.get(alias):
                credentials[alias] = self.encryptor.encrypt_field(credentials[alias])

        document = to_document({k: v for k, v in asdict(connection).items() if k != "connection_config"})
        document["connection_config"] = config
        document["_id"] = connection.id

        with get_mongo_connection(self.mongo_uri) as client:
            self._collection(client, self.collections.CONNECTIONS_COLLECTION).replace_one(
                {"_id": connection.id}, document, upsert=True
            )
        logger.info(f"Saved connection {connection.id} ({connection.custodian_code})")

    def load_connection(self, connection_id: str) -> Optional[CustodianConnection]:
        with get_mongo_connection(self.mongo_uri) as client:
            document = self._collection(client, self.collections.CONNECTIONS_COLLECTION).find_one(
                {"_id": connection_id}
            )
        if document is None:
            return None
        return self._to_connection(document)

    def load_active_connections(self) -> List[CustodianConnection]:
        with get_mongo_connection(self.mongo_uri) as client:
            documents = list(
                self._collection(client, self.collections.CONNECTIONS_COLLECTION).find({"is_active": True})
            )
        return [self._to_connection(d) for d in documents]

    def _to_connection(self, document: Dict) -> CustodianConnection:
        config = document["connection_config"]
        credentials = config.get("authentication", {}).get("credentials", {})
        for name in SECRET_CREDENTIAL_FIELDS:
            alias = _camel(name)
            if isinstance(credentials.get(alias), dict):
                credentials[alias] = self.encryptor.decrypt_field(credentials[alias])

        return CustodianConnection(
            id=document["id"],
            tenant_id=document["tenant_id"],
            custodian_type=CustodianType(document["custodian_type"]),
            custodian_name=document["custodian_name"],
            custodian_code=document["custodian_code"],
            connection_type=ConnectionType(document["connection_type"]),
            connection_config=parse_connection_config(config),
            status=ConnectionStatus(document.get("status", ConnectionStatus.DISCONNECTED.value)),
            last_connection_attempt=document.get("last_connection_attempt"),
            last_successful_connection=document.get("last_successful_connection"),
            connection_retries=document.get("connection_retries", 0),
            max_retries=document.get("max_retries", 3),
            is_active=document.get("is_active", True),
            supported_features=document.get("supported_features", []),
            rate_limits=document.get("rate_limits"),
            error_log=[ConnectionErrorEntry(**e) for e in document.get("error_log", [])],
            created_at=document.get("created_at", datetime.now()),
            updated_at=document.get("updated_at", datetime.now()),
            created_by=document.get("created_by"),
            updated_by=document.get("updated_by"),
        )

    # ------------------------------------------------------------------
    # Feeds, reconciliation, alerts
    # ------------------------------------------------------------------

    def store_processed_feed(self, feed: ProcessedFeed) -> None:
        document = to_document(asdict(feed))
        document["_id"] = feed.id
        document["records"] = [encrypt_record(r, self.encryptor) for r in document["records"]]
        for error in document["processing_errors"]:
            error["raw_data"] = encrypt_record(error.get("raw_data"), self.encryptor)

        with get_mongo_connection(self.mongo_uri) as client:
            self._collection(client, self.collections.PROCESSED_FEEDS_COLLECTION).insert_one(document)
        logger.info(f"Stored processed feed {feed.id} ({feed.processed_record_count}/{feed.record_count} records)")

    def store_reconciliation(self, response: ReconciliationResponse) -> Dict:
        run_id = str(uuid.uuid4())
        now = datetime.now()

        records = []
        for result in response.results:
            rec = to_document(result.to_dict())
            rec["custodian_record"] = encrypt_record(rec["custodian_record"], self.encryptor)
            rec["portfolio_record"] = encrypt_record(rec["portfolio_record"], self.encryptor)
            rec.update({
                "reconciliation_id": response.reconciliation_id,
                "reconciliation_run_id": run_id,
                "connection_id": response.connection_id,
                "reconciliation_date": now,
                "created_at": now,
            })
            records.append(rec)

        with get_mongo_connection(self.mongo_uri) as client:
            db = client[self.db_name]
            if records:
                db[self.collections.RECONCILIATION_COLLECTION].insert_many(records)
            db[self.collections.RECONCILIATION_COLLECTION].insert_one({
                "record_type": "SUMMARY",
                "reconciliation_id": response.reconciliation_id,
                "reconciliation_run_id": run_id,
                "connection_id": response.connection_id,
                "reconciliation_type": response.reconciliation_type.value,
                "status": response.status,
                "summary": asdict(response.summary),
                "errors": response.errors,
                "created_at": now,
            })

        # Log summary
        _log_summary(run_id, response, len(records), self.db_name, self.collections.RECONCILIATION_COLLECTION)

        return {"run_id": run_id, "total_records": len(records)}

    def store_alerts(self, alerts) -> int:
        if not alerts:
            return 0
        with get_mongo_connection(self.mongo_uri) as client:
            self._collection(client, self.collections.ALERTS_COLLECTION).insert_many(
                [to_document(asdict(a)) for a in alerts]
            )
        logger.info(f"Stored {len(alerts)} alerts")
        return len(alerts)

    def store_order_submission(self, connection_id: str, response) -> None:
        document = to_document(asdict(response))
        document["connection_id"] = connection_id
        with get_mongo_connection(self.mongo_uri) as client:
            self._collection(client, self.collections.ORDER_SUBMISSIONS_COLLECTION).insert_one(document)

    def store_document_retrieval(self, connection_id: str, request, documents) -> None:
        document = {
            "connection_id": connection_id,
            "request": encrypt_record(to_document(asdict(request)), self.encryptor),
            "documents": [to_document(asdict(d)) for d in documents],
            "retrieved_at": datetime.now(),
        }
        with get_mongo_connection(self.mongo_uri) as client:
            self._collection(client, self.collections.DOCUMENT_RETRIEVALS_COLLECTION).insert_one(document)


class MongoPortfolioStore:
    """Reads the internal portfolio records that custodian data is reconciled against."""

    def __init__(self, mongo_uri: str, db_name: str, encryptor: FieldEncryptor, collections):
        self.mongo_uri = mongo_uri
        self.db_name = db_name
        self.encryptor = encryptor
        self.collections = collections

    def _latest_snapshot(self, collection_name, portfolio_id, as_of, key_fields, account_number):
        query: Dict[str, Any] = {"portfolio_id": portfolio_id}
        if as_of is not None:
            query["as_of_date"] = {"$lte": to_document(as_of)}

        latest: Dict[str, Dict] = {}
        with get_mongo_connection(self.mongo_uri) as client:
            for doc in client[self.db_name][collection_name].find(query).sort("as_of_date", 1):
                doc.pop("_id", None)
                record = decrypt_record(doc, self.encryptor)
                if account_number and record.get("account_number") != account_number:
                    continue
                # Newer snapshots overwrite older ones
                latest["|".join(str(record.get(k)) for k in key_fields)] = record
        return list(latest.values())

    def get_positions(self, portfolio_id: str, as_of=None, account_number=None) -> List[Dict]:
        return self._latest_snapshot(
            self.collections.PORTFOLIO_POSITIONS_COLLECTION, portfolio_id, as_of,
            ("account_number", "symbol"), account_number,
        )

    def get_cash_balances(self, portfolio_id: str, as_of=None, account_number=None) -> List[Dict]:
        return self._latest_snapshot(
            self.collections.PORTFOLIO_CASH_COLLECTION, portfolio_id, as_of,
            ("account_number", "currency"), account_number,
        )

    def get_transactions(self, portfolio_id: str, date_from=None, date_to=None, account_number=None) -> List[Dict]:
        query: Dict[str, Any] = {"portfolio_id": portfolio_id}
        date_range = {}
        if date_from is not None:
            date_range["$gte"] = to_document(date_from)
        if date_to is not None:
            date_range["$lte"] = to_document(date_to)
        if date_range:
            query["trade_date"] = date_range

        records = []
        with get_mongo_connection(self.mongo_uri) as client:
            for doc in client[self.db_name][self.collections.PORTFOLIO_TRANSACTIONS_COLLECTION].find(query):
                doc.pop("_id", None)
                record = decrypt_record(doc, self.encryptor)
                if account_number and record.get("account_number") != account_number:
                    continue
                records.append(record)
        return records


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _log_summary(
    run_id: str,
    response: ReconciliationResponse,
    total_records: int,
    db_name: str,
    collection_name: str
) -> None:
    summary = response.summary
    logger.info("=" * 70)
    logger.info("RECONCILIATION SUMMARY")
    logger.info("=" * 70)
    logger.info(f"Run ID:                      {run_id}")
    logger.info(f"Connection:                  {response.connection_id}")
    logger.info(f"Type:                        {response.reconciliation_type.value}")
    logger.info(f"Total Records Inserted:      {total_records}")
    logger.info(f"  - Matched:                 {summary.matched_records}")
    logger.info(f"  - Unmatched:               {summary.unmatched_records}")
    logger.info(f"  - Material Discrepancies:  {summary.material_discrepancies}")
    logger.info(f"Accuracy:                    {summary.accuracy_percentage}%")
    for failed_type, error in response.errors.items():
        logger.info(f"Skipped {failed_type}: {error}")
    logger.info(f"Collection:                  {db_name}.{collection_name}")
    logger.info("=" * 70)
