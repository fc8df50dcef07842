"""
Custodian adapter contract.

Every custodian exposes the same capability set; adapters differ only in
which connection types they speak and how they map provider payloads to
canonical records.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, FrozenSet, List, Optional

from config.settings import settings as default_settings
from core.errors import ConfigurationError, RetrievalError, UnsupportedOperationError
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

logger = logging.getLogger(__name__)


class CustodianAdapter(ABC):
    custodian_type: CustodianType
    supported_connection_types: FrozenSet[ConnectionType] = frozenset()

    def __init__(self, settings=default_settings, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.custodian_type.value

    @abstractmethod
    def validate_config(self, config, connection_type: ConnectionType) -> None:
        """Raise ConfigurationError when the config cannot work for ``connection_type``."""

    @abstractmethod
    def test_connection(self, config, connection_type: ConnectionType) -> List[ConnectionTestResult]:
        """Run the staged connectivity checks."""

    @abstractmethod
    def retrieve_data(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        """Fetch one feed's raw records."""

    def submit_orders(self, connection: CustodianConnection, request: OrderSubmissionRequest) -> OrderSubmissionResponse:
        raise UnsupportedOperationError(f"{self.name} does not support order submission")

    def retrieve_documents(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        raise UnsupportedOperationError(f"{self.name} does not support document retrieval")

    @abstractmethod
    def health_check(self, connection: CustodianConnection) -> bool:
        """True when the custodian is reachable. Never raises."""

    def refresh_token(self, config) -> None:
        """Refresh the cached access token, for adapters that hold one."""

    def token_key(self, config) -> Optional[str]:
        return None

    def _require_connection_type(self, connection_type: ConnectionType) -> None:
        if connection_type not in self.supported_connection_types:
            raise ConfigurationError(f"{self.name} does not support connection type {connection_type}")

    @staticmethod
    def _feed_type(request: DataFeedRequest) -> FeedType:
        try:
            return FeedType(request.feed_type)
        except ValueError as e:
            raise RetrievalError(f"Unsupported feed type: {request.feed_type}") from e

    @staticmethod
    def run_stage(test_type: ConnectionTestType, check: Callable[[], Optional[Dict]]) -> ConnectionTestResult:
        """Time ``check`` and turn its outcome into a test result."""
        started = time.monotonic()
        try:
            details = check()
            return ConnectionTestResult(
                test_type=test_type,
                success=True,
                response_time_ms=(time.monotonic() - started) * 1000,
                details=details,
            )
        except Exception as e:
            logger.warning(f"{test_type.value} test failed: {e}")
            return ConnectionTestResult(
                test_type=test_type,
                success=False,
                response_time_ms=(time.monotonic() - started) * 1000,
                error_message=str(e),
            )
