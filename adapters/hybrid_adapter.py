import logging
from datetime import datetime
from typing import Dict, List

from adapters.rest_adapter import RestAdapter
from adapters.sftp_adapter import SftpAdapter
from core.models import (
    ConnectionTestResult,
    ConnectionTestType,
    ConnectionType,
    CustodianConnection,
    CustodianType,
    DataFeedRequest,
    DocumentInfo,
    DocumentRetrievalRequest,
    FeedData,
    FeedType,
    OrderSubmissionRequest,
    OrderSubmissionResponse,
)
from processors.fixed_width_processor import FixedWidthProcessor

logger = logging.getLogger(__name__)


class HybridAdapter(RestAdapter, SftpAdapter):
    """
    Custodian reachable over REST, SFTP or FTP.

    REST feeds are paginated JSON; SFTP feeds are fixed-width text files
    named ``PREFIX_YYYYMMDD_*.txt``. FTP is accepted for configuration and
    connectivity tests but yields no records.
    """

    custodian_type = CustodianType.PERSHING
    supported_connection_types = frozenset({ConnectionType.REST_API, ConnectionType.SFTP, ConnectionType.FTP})

    default_base_url = "https://api.pershing.com"
    default_api_version = "v2"
    request_timeout = 90
    default_endpoints = {
        FeedType.POSITIONS: "/positions",
        FeedType.TRANSACTIONS: "/transactions",
        FeedType.CASH_BALANCES: "/cash-balances",
        FeedType.CORPORATE_ACTIONS: "/corporate-actions",
        FeedType.SETTLEMENTS: "/settlements",
    }

    file_template = "{prefix}_{date}_*.txt"
    # Only feeds with a fixed-width layout are read from files.
    file_prefixes = {
        FeedType.POSITIONS: "POS",
        FeedType.TRANSACTIONS: "TXN",
    }

    def validate_config(self, config, connection_type: ConnectionType) -> None:
        self._require_connection_type(connection_type)
        if connection_type == ConnectionType.REST_API:
            self._validate_rest(config)
        else:
            self._validate_file_transfer(config, connection_type)

    def test_connection(self, config, connection_type: ConnectionType) -> List[ConnectionTestResult]:
        self._require_connection_type(connection_type)
        if connection_type == ConnectionType.REST_API:
            return self._test_rest(config)
        if connection_type == ConnectionType.SFTP:
            return self._test_sftp(config)
        return [ConnectionTestResult(
            test_type=ConnectionTestType.CONNECTIVITY,
            success=True,
            details={"connectionType": "FTP", "host": config.file_transfer.host},
        )]

    def retrieve_data(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        self._require_retrieval_type(connection)
        if connection.connection_type == ConnectionType.REST_API:
            return self._retrieve_via_api(connection, request)
        if connection.connection_type == ConnectionType.SFTP:
            return self._retrieve_via_sftp(connection, request)

        logger.warning(f"FTP retrieval for {connection.id} returns no records")
        return FeedData(
            records=[],
            metadata={"recordCount": 0, "retrievedAt": datetime.now().isoformat(), "source": "FTP"},
        )

    def submit_orders(self, connection: CustodianConnection, request: OrderSubmissionRequest) -> OrderSubmissionResponse:
        return RestAdapter.submit_orders(self, connection, request)

    def retrieve_documents(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        self._require_retrieval_type(connection)
        if connection.connection_type == ConnectionType.REST_API:
            return self._documents_via_api(connection, request)
        if connection.connection_type == ConnectionType.SFTP:
            return self._documents_via_sftp(connection, request)
        return []

    def health_check(self, connection: CustodianConnection) -> bool:
        if connection.connection_type == ConnectionType.REST_API:
            return self._health_via_api(connection)
        if connection.connection_type == ConnectionType.SFTP:
            return self._health_via_sftp(connection)
        return True

    def parse_file(self, path: str, feed_type: FeedType) -> List[Dict]:
        return list(FixedWidthProcessor(feed_type).read_records(path))
