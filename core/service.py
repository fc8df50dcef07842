"""
Custodian integration service.

Entry point used by the DAG and by callers embedding the engine: creates
connections, pulls and validates feeds, reconciles, submits orders and
retrieves documents, always through the registry so that each connection
runs at most one operation at a time.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from adapters import build_adapter_registry
from config.connection_config import parse_connection_request
from config.settings import settings as default_settings
from core.errors import ConfigurationError, ConnectivityError
from core.events import (
    CONNECTION_CREATED,
    DATA_FEED_PROCESSED,
    DOCUMENTS_RETRIEVED,
    ORDERS_SUBMITTED,
    EventPublisher,
    LoggingEventPublisher,
    load_collaborator,
    safe_publish,
)
from core.feed_processing import FeedProcessor
from core.models import (
    ConnectionStatus,
    CustodianConnection,
    CustodianPerformanceMetrics,
    DataFeedRequest,
    DocumentInfo,
    DocumentRetrievalRequest,
    FeedData,
    OrderSubmissionRequest,
    OrderSubmissionResponse,
    ProcessedFeed,
    ReconciliationRequest,
    ReconciliationResponse,
    ReconciliationType,
    new_id,
)
from core.reconciliation import FEED_TYPES, ReconciliationEngine, default_tolerances
from core.registry import ConnectionRegistry
from core.token_cache import TokenCache
from integrations.mongo_handler import CustodianRepository, MongoPortfolioStore

logger = logging.getLogger(__name__)


class CustodianIntegrationService:
    def __init__(
        self,
        registry: ConnectionRegistry,
        engine: ReconciliationEngine,
        repository=None,
        publisher: Optional[EventPublisher] = None,
        processor: Optional[FeedProcessor] = None,
        settings=default_settings,
    ):
        self.registry = registry
        self.engine = engine
        self.repository = repository
        self.publisher = publisher or LoggingEventPublisher()
        self.processor = processor or FeedProcessor()
        self.settings = settings
        self.cancel_event = threading.Event()
        self._metrics: Dict[str, CustodianPerformanceMetrics] = {}
        self._metrics_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def create_connection(self, payload: Dict[str, Any], tenant_id: str, user_id: Optional[str] = None) -> CustodianConnection:
        request = parse_connection_request(payload)
        adapter = self.registry.get_adapter(request.custodian_type)
        adapter.validate_config(request.connection_config, request.connection_type)

        results = adapter.test_connection(request.connection_config, request.connection_type)
        failed = [r for r in results if not r.success]
        if failed:
            messages = "; ".join(f"{r.test_type.value}: {r.error_message}" for r in failed)
            raise ConnectivityError(f"Connection test failed: {messages}")

        now = datetime.now()
        connection = CustodianConnection(
            id=new_id(),
            tenant_id=tenant_id,
            custodian_type=request.custodian_type,
            custodian_name=request.custodian_name,
            custodian_code=request.custodian_code,
            connection_type=request.connection_type,
            connection_config=request.connection_config,
            status=ConnectionStatus.CONNECTED,
            last_connection_attempt=now,
            last_successful_connection=now,
            max_retries=self.settings.CONNECTION_MAX_RETRIES,
            supported_features=list(request.supported_features),
            rate_limits=request.rate_limits.model_dump() if request.rate_limits else None,
            created_by=user_id,
            updated_by=user_id,
        )
        if self.repository is not None:
            self.repository.save_connection(connection)
        self.registry.register(connection)

        safe_publish(self.publisher, CONNECTION_CREATED, {
            "connectionId": connection.id,
            "tenantId": tenant_id,
            "custodianType": connection.custodian_type.value,
            "connectionType": connection.connection_type.value,
            "createdBy": user_id,
        })
        logger.info(f"Created {connection.custodian_type.value} connection {connection.id} for tenant {tenant_id}")
        return connection

    def monitor_connections(self) -> Dict[str, bool]:
        results = self.registry.monitor_connections(self.cancel_event)
        self.registry.refresh_due_tokens()
        return results

    def _active_snapshot(self, connection_id: str) -> CustodianConnection:
        connection = self.registry.snapshot(connection_id)
        if not connection.is_active:
            raise ConfigurationError(f"Custodian connection {connection_id} is inactive")
        return connection

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def _record(self, connection_id: str, success: bool, started: float) -> None:
        with self._metrics_lock:
            metrics = self._metrics.setdefault(connection_id, CustodianPerformanceMetrics(connection_id))
            metrics.record(success, (time.monotonic() - started) * 1000)

    def _retrieve(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        adapter = self.registry.get_adapter(connection.custodian_type)
        started = time.monotonic()
        try:
            raw_feed = adapter.retrieve_data(connection, request)
        except Exception:
            self._record(connection.id, False, started)
            raise
        self._record(connection.id, True, started)
        return raw_feed

    def _process(self, connection: CustodianConnection, request: DataFeedRequest) -> ProcessedFeed:
        raw_feed = self._retrieve(connection, request)
        feed = self.processor.process_and_validate(raw_feed, connection, request, self.cancel_event)
        if self.repository is not None:
            self.repository.store_processed_feed(feed)

        safe_publish(self.publisher, DATA_FEED_PROCESSED, {
            "feedId": feed.id,
            "connectionId": connection.id,
            "tenantId": connection.tenant_id,
            "feedType": feed.feed_type.value,
            "recordCount": feed.record_count,
            "processedRecordCount": feed.processed_record_count,
            "errorRecordCount": feed.error_record_count,
            "status": feed.processing_status.value,
        })
        return feed

    def process_data_feed(self, connection_id: str, request: DataFeedRequest) -> ProcessedFeed:
        with self.registry.lock_for(connection_id):
            connection = self._active_snapshot(connection_id)
            return self._process(connection, request)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def perform_reconciliation(self, connection_id: str, request: ReconciliationRequest) -> ReconciliationResponse:
        with self.registry.lock_for(connection_id):
            connection = self._active_snapshot(connection_id)

            def fetch(reconciliation_type: ReconciliationType) -> List[Dict]:
                feed_request = DataFeedRequest(
                    feed_type=FEED_TYPES[reconciliation_type],
                    portfolio_id=request.portfolio_id,
                    account_number=request.account_number,
                    date_from=request.as_of_date,
                    date_to=request.as_of_date,
                )
                return self._process(connection, feed_request).records

            response = self.engine.reconcile(connection, request, fetch, self.cancel_event)

        logger.info(
            f"Reconciliation {response.reconciliation_id} for {connection_id}: {response.status}, "
            f"accuracy {response.summary.accuracy_percentage}%"
        )
        return response

    def reconcile_many(
        self, requests: List[Tuple[str, ReconciliationRequest]]
    ) -> Tuple[Dict[str, ReconciliationResponse], Dict[str, str]]:
        """Reconcile several connections in parallel; returns (responses, errors) keyed by connection id."""
        responses: Dict[str, ReconciliationResponse] = {}
        errors: Dict[str, str] = {}

        def run(item):
            connection_id, request = item
            if self.cancel_event.is_set():
                return connection_id, None, "cancelled"
            try:
                return connection_id, self.perform_reconciliation(connection_id, request), None
            except Exception as e:
                logger.error(f"Reconciliation failed for connection {connection_id}: {e}")
                return connection_id, None, str(e)

        with ThreadPoolExecutor(max_workers=self.settings.MAX_PARALLEL_CONNECTIONS) as executor:
            for connection_id, response, error in executor.map(run, requests):
                if error is None:
                    responses[connection_id] = response
                else:
                    errors[connection_id] = error
        return responses, errors

    # ------------------------------------------------------------------
    # Orders and documents
    # ------------------------------------------------------------------

    def submit_orders(self, connection_id: str, request: OrderSubmissionRequest) -> OrderSubmissionResponse:
        with self.registry.lock_for(connection_id):
            connection = self._active_snapshot(connection_id)
            adapter = self.registry.get_adapter(connection.custodian_type)
            started = time.monotonic()
            response = adapter.submit_orders(connection, request)
            self._record(connection_id, response.overall_status != "FAILED", started)

        if self.repository is not None:
            self.repository.store_order_submission(connection_id, response)
        safe_publish(self.publisher, ORDERS_SUBMITTED, {
            "submissionId": response.submission_id,
            "connectionId": connection_id,
            "portfolioId": request.portfolio_id,
            "orderCount": len(request.orders),
            "overallStatus": response.overall_status,
        })
        return response

    def retrieve_documents(self, connection_id: str, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        with self.registry.lock_for(connection_id):
            connection = self._active_snapshot(connection_id)
            adapter = self.registry.get_adapter(connection.custodian_type)
            documents = adapter.retrieve_documents(connection, request)

        if self.repository is not None:
            self.repository.store_document_retrieval(connection_id, request, documents)
        safe_publish(self.publisher, DOCUMENTS_RETRIEVED, {
            "connectionId": connection_id,
            "documentType": request.document_type.value,
            "documentCount": len(documents),
        })
        return documents

    # ------------------------------------------------------------------
    # Metrics and lifecycle
    # ------------------------------------------------------------------

    def get_performance_metrics(self, connection_id: str) -> CustodianPerformanceMetrics:
        with self._metrics_lock:
            return self._metrics.get(connection_id) or CustodianPerformanceMetrics(connection_id)

    def shutdown(self) -> None:
        self.cancel_event.set()
        logger.info("Custodian integration service shutting down")


def build_service(settings=default_settings) -> CustodianIntegrationService:
    """Wire the service from settings."""
    if not settings.FIELD_ENCRYPTOR:
        raise ConfigurationError("FIELD_ENCRYPTOR must name a field encryptor as module:attribute")

    encryptor = load_collaborator(settings.FIELD_ENCRYPTOR)
    publisher = load_collaborator(settings.EVENT_PUBLISHER)
    repository = CustodianRepository(settings.MONGO_URI, settings.DB_NAME, encryptor, settings)
    portfolio_store = MongoPortfolioStore(settings.MONGO_URI, settings.DB_NAME, encryptor, settings)

    token_cache = TokenCache(settings.TOKEN_REFRESH_MARGIN_SECONDS)
    registry = ConnectionRegistry(
        repository=repository,
        adapters=build_adapter_registry(token_cache=token_cache, settings=settings),
        token_cache=token_cache,
        settings=settings,
    )
    engine = ReconciliationEngine(portfolio_store, repository, publisher, default_tolerances(settings))
    return CustodianIntegrationService(registry, engine, repository, publisher, settings=settings)
