"""Domain types shared across adapters, the registry and the engines."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class CustodianType(str, Enum):
    SCHWAB = "SCHWAB"
    FIDELITY = "FIDELITY"
    PERSHING = "PERSHING"
    BNY_MELLON = "BNY_MELLON"
    STATE_STREET = "STATE_STREET"
    JP_MORGAN = "JP_MORGAN"
    NORTHERN_TRUST = "NORTHERN_TRUST"
    CUSTOM = "CUSTOM"


class ConnectionType(str, Enum):
    REST_API = "REST_API"
    SFTP = "SFTP"
    FTP = "FTP"


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class FeedType(str, Enum):
    POSITIONS = "POSITIONS"
    TRANSACTIONS = "TRANSACTIONS"
    CASH_BALANCES = "CASH_BALANCES"
    CORPORATE_ACTIONS = "CORPORATE_ACTIONS"
    SETTLEMENTS = "SETTLEMENTS"


class FileProcessingStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


class ReconciliationStatus(str, Enum):
    MATCHED = "MATCHED"
    UNMATCHED = "UNMATCHED"


class ReconciliationType(str, Enum):
    POSITION = "POSITION"
    TRANSACTION = "TRANSACTION"
    CASH_BALANCE = "CASH_BALANCE"
    FULL = "FULL"


class ConnectionTestType(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    CONNECTIVITY = "CONNECTIVITY"
    DATA_RETRIEVAL = "DATA_RETRIEVAL"
    ORDER_SUBMISSION = "ORDER_SUBMISSION"


class DocumentType(str, Enum):
    STATEMENT = "STATEMENT"
    CONFIRMATION = "CONFIRMATION"
    TAX_DOCUMENT = "TAX_DOCUMENT"
    CORPORATE_ACTION_NOTICE = "CORPORATE_ACTION_NOTICE"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ConnectionErrorEntry:
    timestamp: datetime
    error_code: str
    error_message: str
    retry_attempt: int
    resolved: bool = False


@dataclass
class CustodianConnection:
    """A tenant's configured link to one custodian."""

    id: str
    tenant_id: str
    custodian_type: CustodianType
    custodian_name: str
    custodian_code: str
    connection_type: ConnectionType
    connection_config: Any
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_connection_attempt: Optional[datetime] = None
    last_successful_connection: Optional[datetime] = None
    connection_retries: int = 0
    max_retries: int = 3
    is_active: bool = True
    supported_features: List[str] = field(default_factory=list)
    rate_limits: Optional[Dict[str, int]] = None
    error_log: List[ConnectionErrorEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def record_error(self, entry: ConnectionErrorEntry, limit: int) -> None:
        """Append to the error log, keeping only the newest ``limit`` entries."""
        self.error_log.append(entry)
        if len(self.error_log) > limit:
            del self.error_log[: len(self.error_log) - limit]

    def deactivate(self, user_id: Optional[str] = None) -> None:
        self.is_active = False
        self.updated_at = datetime.now()
        self.updated_by = user_id


@dataclass
class ConnectionTestResult:
    test_type: ConnectionTestType
    success: bool
    response_time_ms: float = 0.0
    details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass
class DataFeedRequest:
    feed_type: FeedType
    portfolio_id: Optional[str] = None
    account_number: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


@dataclass
class FeedData:
    """Raw records as returned by an adapter, before validation."""

    records: List[Dict[str, Any]]
    metadata: Dict[str, Any]


@dataclass
class ProcessingError:
    record_number: int
    error_message: str
    error_type: str = "VALIDATION"
    error_code: str = "VALIDATION_ERROR"
    severity: str = "ERROR"
    field_name: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None
    resolved: bool = False
    id: str = field(default_factory=new_id)


@dataclass
class ProcessedFeed:
    id: str
    tenant_id: str
    connection_id: str
    feed_type: FeedType
    processing_status: FileProcessingStatus
    file_name: Optional[str] = None
    processing_start_time: datetime = field(default_factory=datetime.now)
    processing_end_time: Optional[datetime] = None
    record_count: int = 0
    processed_record_count: int = 0
    error_record_count: int = 0
    processing_errors: List[ProcessingError] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    checksums: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Discrepancy:
    field: str
    expected: Any
    actual: Any
    difference: Optional[float] = None
    percentage_difference: Optional[float] = None
    within_tolerance: bool = False


@dataclass
class ReconciliationRequest:
    portfolio_id: str
    reconciliation_type: ReconciliationType = ReconciliationType.POSITION
    as_of_date: Optional[date] = None
    account_number: Optional[str] = None


@dataclass
class ReconciliationResult:
    record_key: str
    reconciliation_type: ReconciliationType
    custodian_record: Optional[Dict[str, Any]]
    portfolio_record: Optional[Dict[str, Any]]
    discrepancies: List[Discrepancy] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    @property
    def status(self) -> ReconciliationStatus:
        if all(d.within_tolerance for d in self.discrepancies):
            return ReconciliationStatus.MATCHED
        return ReconciliationStatus.UNMATCHED

    @property
    def material_discrepancies(self) -> List[Discrepancy]:
        return [d for d in self.discrepancies if not d.within_tolerance]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["reconciliation_type"] = self.reconciliation_type.value
        return data


@dataclass(frozen=True)
class ReconciliationSummary:
    total_records: int
    matched_records: int
    unmatched_records: int
    discrepancy_count: int
    material_discrepancies: int
    reconciled_value: float
    discrepancy_amount: float
    accuracy_percentage: float


@dataclass
class CustodianAlert:
    connection_id: str
    tenant_id: str
    alert_type: str
    severity: str
    title: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    triggered_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=new_id)


@dataclass
class ReconciliationResponse:
    reconciliation_id: str
    connection_id: str
    reconciliation_type: ReconciliationType
    summary: ReconciliationSummary
    results: List[ReconciliationResult]
    alerts: List[CustodianAlert]
    complete: bool = True
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if not self.complete:
            return "CANCELLED"
        if self.errors:
            return "PARTIAL"
        return "COMPLETED" if self.summary.unmatched_records == 0 else "COMPLETED_WITH_DISCREPANCIES"


@dataclass
class OrderDetails:
    internal_order_id: str
    symbol: str
    side: str
    quantity: float
    account_number: str
    order_type: str = "MARKET"
    time_in_force: str = "DAY"
    price: Optional[float] = None
    stop_price: Optional[float] = None
    special_instructions: Optional[str] = None


@dataclass
class OrderSubmissionRequest:
    portfolio_id: str
    orders: List[OrderDetails]


@dataclass
class OrderStatus:
    internal_order_id: str
    status: str
    custodian_order_id: Optional[str] = None
    status_message: Optional[str] = None
    rejection_reason: Optional[str] = None


@dataclass
class OrderSubmissionError:
    order_id: str
    error_code: str
    error_message: str


@dataclass
class OrderSubmissionResponse:
    submission_id: str
    order_statuses: List[OrderStatus]
    overall_status: str
    errors: List[OrderSubmissionError] = field(default_factory=list)
    submitted_at: datetime = field(default_factory=datetime.now)


@dataclass
class DocumentRetrievalRequest:
    document_type: DocumentType
    portfolio_id: Optional[str] = None
    account_number: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


@dataclass
class DocumentInfo:
    document_id: str
    file_name: str
    size: int
    date: Optional[datetime]
    download_url: str
    expiry: Optional[datetime] = None
    status: str = "AVAILABLE"


@dataclass
class CustodianPerformanceMetrics:
    connection_id: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0
    last_updated: Optional[datetime] = None

    def record(self, success: bool, response_time_ms: float) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        # Running mean
        self.average_response_time_ms += (response_time_ms - self.average_response_time_ms) / self.total_requests
        self.last_updated = datetime.now()

    @property
    def error_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.failed_requests / self.total_requests
