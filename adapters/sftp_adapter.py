import fnmatch
import logging
import os
import uuid
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from adapters.base import CustodianAdapter
from core.errors import ConfigurationError, CustodianIntegrationError, RetrievalError
from core.models import (
    ConnectionTestResult,
    ConnectionTestType,
    ConnectionType,
    CustodianConnection,
    CustodianType,
    DataFeedRequest,
    DocumentInfo,
    DocumentRetrievalRequest,
    DocumentType,
    FeedData,
    FeedType,
)
from integrations.sftp_client import SFTPClient
from processors.csv_processor import CSVProcessor

logger = logging.getLogger(__name__)

DOCUMENT_PREFIXES = {
    DocumentType.STATEMENT: "STMT",
    DocumentType.CONFIRMATION: "CONF",
    DocumentType.TAX_DOCUMENT: "TAX",
    DocumentType.CORPORATE_ACTION_NOTICE: "CA",
}


class SftpAdapter(CustodianAdapter):
    """Custodian that drops daily CSV extracts on an SFTP server."""

    custodian_type = CustodianType.FIDELITY
    supported_connection_types = frozenset({ConnectionType.SFTP})

    file_template = "{prefix}_{date}.csv"
    file_prefixes = {
        FeedType.POSITIONS: "positions",
        FeedType.TRANSACTIONS: "transactions",
        FeedType.CASH_BALANCES: "balances",
    }

    def __init__(self, *, sftp_factory: Callable[..., SFTPClient] = SFTPClient, download_dir: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.sftp_factory = sftp_factory
        self.download_dir = download_dir or self.settings.LOCAL_DOWNLOAD_DIR

    def validate_config(self, config, connection_type: ConnectionType) -> None:
        self._require_connection_type(connection_type)
        self._validate_file_transfer(config, connection_type)

    def test_connection(self, config, connection_type: ConnectionType) -> List[ConnectionTestResult]:
        self._require_connection_type(connection_type)
        return self._test_sftp(config)

    def retrieve_data(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        if connection.connection_type != ConnectionType.SFTP:
            raise RetrievalError(f"{self.name} cannot retrieve over {connection.connection_type}")
        return self._retrieve_via_sftp(connection, request)

    def retrieve_documents(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        if connection.connection_type != ConnectionType.SFTP:
            raise RetrievalError(f"{self.name} cannot retrieve over {connection.connection_type}")
        return self._documents_via_sftp(connection, request)

    def health_check(self, connection: CustodianConnection) -> bool:
        return self._health_via_sftp(connection)

    def parse_file(self, path: str, feed_type: FeedType) -> List[Dict]:
        return list(CSVProcessor(feed_type).read_records(path))

    def file_pattern(self, config, feed_type: FeedType, file_date: Optional[date]) -> str:
        prefix = self.file_prefixes.get(feed_type)
        if prefix is None:
            raise RetrievalError(f"{self.name} has no file feed for {feed_type.value}")
        template = config.file_transfer.file_pattern or self.file_template
        return template.format(prefix=prefix, date=file_date.strftime("%Y%m%d") if file_date else "*")

    def sftp_client(self, config, timeout: int) -> SFTPClient:
        transfer = config.file_transfer
        credentials = config.authentication.credentials
        return self.sftp_factory(
            host=transfer.host,
            port=transfer.port,
            username=credentials.username,
            password=credentials.password,
            private_key_path=credentials.private_key_path,
            passphrase=credentials.passphrase,
            timeout=timeout,
        )

    def _validate_file_transfer(self, config, connection_type: ConnectionType) -> None:
        transfer = config.file_transfer
        if transfer is None:
            raise ConfigurationError(f"{self.name} file transfer configuration is required for {connection_type.value}")
        if not transfer.host:
            raise ConfigurationError(f"{self.name} file transfer host is required")

        if connection_type == ConnectionType.SFTP:
            credentials = config.authentication.credentials
            if not transfer.directory:
                raise ConfigurationError(f"{self.name} SFTP directory is required")
            if not credentials.username:
                raise ConfigurationError(f"{self.name} SFTP username is required")
            if not (credentials.password or credentials.private_key_path):
                raise ConfigurationError(f"{self.name} SFTP password or private key is required")

    def _test_sftp(self, config) -> List[ConnectionTestResult]:
        def connectivity():
            client = self.sftp_client(config, timeout=self.settings.SFTP_TEST_TIMEOUT)
            try:
                client.connect()
                files = client.list_files(config.file_transfer.directory)
                return {"directory": config.file_transfer.directory, "filesFound": len(files)}
            finally:
                client.disconnect()

        return [self.run_stage(ConnectionTestType.CONNECTIVITY, connectivity)]

    def _retrieve_via_sftp(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        feed_type = self._feed_type(request)
        config = connection.connection_config
        directory = config.file_transfer.directory.rstrip("/")
        pattern = self.file_pattern(config, feed_type, request.date_from)

        client = self.sftp_client(config, timeout=self.settings.SFTP_READY_TIMEOUT)
        try:
            client.connect()
            entries = [e for e in client.list_files(directory) if fnmatch.fnmatchcase(e.filename, pattern)]
            if not entries:
                raise RetrievalError(f"No files found matching pattern: {pattern}")

            entries.sort(key=lambda e: e.st_mtime or 0, reverse=True)
            selected = entries[: self.settings.MAX_FILES_PER_FEED]

            records: List[Dict] = []
            for entry in selected:
                local_path = os.path.join(self.download_dir, f"{uuid.uuid4().hex}_{entry.filename}")
                client.download_file(f"{directory}/{entry.filename}", local_path)
                try:
                    records.extend(self.parse_file(local_path, feed_type))
                finally:
                    _remove_quietly(local_path)
        finally:
            client.disconnect()

        logger.info(f"Parsed {len(records)} {feed_type.value} records from {len(selected)} file(s) via {self.name} SFTP")
        return FeedData(
            records=records,
            metadata={
                "recordCount": len(records),
                "retrievedAt": datetime.now().isoformat(),
                "source": "SFTP",
                "pattern": pattern,
                "filesProcessed": [e.filename for e in selected],
            },
        )

    def _documents_via_sftp(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        config = connection.connection_config
        transfer = config.file_transfer
        directory = (transfer.documents_directory or transfer.directory).rstrip("/")
        pattern = f"{DOCUMENT_PREFIXES[request.document_type]}_*"

        client = self.sftp_client(config, timeout=self.settings.SFTP_READY_TIMEOUT)
        try:
            client.connect()
            entries = [e for e in client.list_files(directory) if fnmatch.fnmatchcase(e.filename, pattern)]
        finally:
            client.disconnect()

        documents = []
        for entry in entries:
            modified = datetime.fromtimestamp(entry.st_mtime) if entry.st_mtime else None
            if modified and request.date_from and modified.date() < request.date_from:
                continue
            if modified and request.date_to and modified.date() > request.date_to:
                continue
            documents.append(DocumentInfo(
                document_id=entry.filename,
                file_name=entry.filename,
                size=entry.st_size or 0,
                date=modified,
                download_url=f"sftp://{transfer.host}:{transfer.port}{directory}/{entry.filename}",
            ))
        return documents

    def _health_via_sftp(self, connection: CustodianConnection) -> bool:
        client = self.sftp_client(connection.connection_config, timeout=self.settings.SFTP_TEST_TIMEOUT)
        try:
            client.connect()
            return True
        except CustodianIntegrationError as e:
            logger.warning(f"{self.name} SFTP health check failed for {connection.id}: {e}")
            return False
        finally:
            client.disconnect()


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove temporary file {path}: {e}")
