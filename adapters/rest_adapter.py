import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from adapters.base import CustodianAdapter
from core.errors import (
    ConfigurationError,
    ConnectivityError,
    CustodianIntegrationError,
    RecordValidationError,
    RetrievalError,
)
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
    OrderDetails,
    OrderStatus,
    OrderSubmissionError,
    OrderSubmissionRequest,
    OrderSubmissionResponse,
    new_id,
)
from core.token_cache import TokenCache
from integrations.http_client import CustodianHttpClient

logger = logging.getLogger(__name__)

ENDPOINT_FIELDS = {
    FeedType.POSITIONS: "positions",
    FeedType.TRANSACTIONS: "transactions",
    FeedType.CASH_BALANCES: "cash_balances",
    FeedType.CORPORATE_ACTIONS: "corporate_actions",
    FeedType.SETTLEMENTS: "settlements",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def validate_order(order: OrderDetails) -> None:
    if not order.symbol:
        raise RecordValidationError("Order symbol is required", "symbol")
    if not order.account_number:
        raise RecordValidationError("Order account number is required", "account_number")
    if order.side not in ("BUY", "SELL"):
        raise RecordValidationError(f"Unsupported order side: {order.side}", "side")
    if order.quantity is None or order.quantity <= 0:
        raise RecordValidationError("Order quantity must be positive", "quantity")
    if order.order_type in ("LIMIT", "STOP_LIMIT") and order.price is None:
        raise RecordValidationError(f"{order.order_type} order requires a price", "price")
    if order.order_type in ("STOP", "STOP_LIMIT") and order.stop_price is None:
        raise RecordValidationError(f"{order.order_type} order requires a stop price", "stop_price")


class _ConfigTokenSource:
    """Binds an adapter's token handling to one connection config."""

    def __init__(self, adapter: "RestAdapter", config):
        self.adapter = adapter
        self.config = config

    def current_token(self) -> Optional[str]:
        return self.adapter.access_token(self.config)

    def refresh(self) -> Optional[str]:
        if self.config.authentication.type == "API_KEY":
            return None
        return self.adapter.refresh_token(self.config)


class RestAdapter(CustodianAdapter):
    """Custodian reached over an authenticated REST API with paginated feeds."""

    custodian_type = CustodianType.SCHWAB
    supported_connection_types = frozenset({ConnectionType.REST_API})

    default_base_url = "https://api.schwabapi.com/trader"
    default_api_version = "v1"
    request_timeout = 30
    default_endpoints = {
        FeedType.POSITIONS: "/positions",
        FeedType.TRANSACTIONS: "/transactions",
        FeedType.CASH_BALANCES: "/balances",
    }
    date_range_params = ("fromDate", "toDate")
    # Provider field names that do not map to canonical names by snake-casing alone
    field_aliases: Dict[str, str] = {
        "accountId": "account_number",
        "instrumentSymbol": "symbol",
        "marketPrice": "unit_price",
        "price": "unit_price",
        "amount": "net_amount",
    }

    def __init__(self, *, token_cache: Optional[TokenCache] = None, session: Optional[requests.Session] = None, **kwargs):
        super().__init__(**kwargs)
        self.token_cache = token_cache or TokenCache(self.settings.TOKEN_REFRESH_MARGIN_SECONDS)
        self._session = session

    def _new_session(self) -> requests.Session:
        return self._session or requests.Session()

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    def validate_config(self, config, connection_type: ConnectionType) -> None:
        self._require_connection_type(connection_type)
        self._validate_rest(config)

    def test_connection(self, config, connection_type: ConnectionType) -> List[ConnectionTestResult]:
        self._require_connection_type(connection_type)
        return self._test_rest(config)

    def retrieve_data(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        self._require_retrieval_type(connection)
        return self._retrieve_via_api(connection, request)

    def submit_orders(self, connection: CustodianConnection, request: OrderSubmissionRequest) -> OrderSubmissionResponse:
        if connection.connection_type != ConnectionType.REST_API:
            return super().submit_orders(connection, request)
        return self._submit_via_api(connection, request)

    def retrieve_documents(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        self._require_retrieval_type(connection)
        return self._documents_via_api(connection, request)

    def health_check(self, connection: CustodianConnection) -> bool:
        return self._health_via_api(connection)

    def _require_retrieval_type(self, connection: CustodianConnection) -> None:
        if connection.connection_type not in self.supported_connection_types:
            raise RetrievalError(f"{self.name} cannot retrieve over {connection.connection_type}")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def token_key(self, config) -> Optional[str]:
        credentials = config.authentication.credentials
        if config.authentication.type == "API_KEY":
            return None
        return f"{self.name}:{credentials.client_id}"

    def access_token(self, config) -> Optional[str]:
        if config.authentication.type == "API_KEY":
            return config.authentication.credentials.api_key
        return self.token_cache.get_or_fetch(self.token_key(config), lambda: self._fetch_token(config))

    def refresh_token(self, config) -> Optional[str]:
        if config.authentication.type == "API_KEY":
            return None
        return self.token_cache.refresh(self.token_key(config), lambda: self._fetch_token(config))

    def _fetch_token(self, config) -> Tuple[str, int]:
        credentials = config.authentication.credentials
        token_url = credentials.token_endpoint or f"{self.base_url(config, versioned=False)}/oauth/token"
        payload = {
            "grant_type": "client_credentials",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        if credentials.scope:
            payload["scope"] = credentials.scope

        try:
            response = self._new_session().post(token_url, data=payload, timeout=self.request_timeout)
        except requests.RequestException as e:
            raise ConnectivityError(f"{self.name} token request failed: {e}") from e

        if response.status_code != 200:
            raise ConnectivityError(f"{self.name} authentication failed: HTTP {response.status_code}", response.status_code)

        body = response.json()
        logger.info(f"Authenticated with {self.name}")
        return body["access_token"], int(body.get("expires_in", 3600))

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def base_url(self, config, versioned: bool = True) -> str:
        url = (config.base_url or self.default_base_url).rstrip("/")
        version = config.api_version or self.default_api_version
        if versioned and version:
            return f"{url}/{version}"
        return url

    def http_client(self, config, max_server_retries: Optional[int] = None) -> CustodianHttpClient:
        api_key = config.authentication.type == "API_KEY"
        return CustodianHttpClient(
            base_url=self.base_url(config),
            source=self.name,
            token_source=_ConfigTokenSource(self, config),
            auth_header="X-API-Key" if api_key else "Authorization",
            auth_scheme=None if api_key else "Bearer",
            timeout=config.timeout_seconds or self.request_timeout,
            session=self._new_session(),
            max_server_retries=(
                self.settings.SERVER_ERROR_MAX_RETRIES if max_server_retries is None else max_server_retries
            ),
            backoff_base=self.settings.BACKOFF_BASE_SECONDS,
            backoff_cap=self.settings.BACKOFF_CAP_SECONDS,
            default_retry_after=self.settings.RATE_LIMIT_DEFAULT_RETRY_AFTER,
            max_rate_limit_retries=self.settings.RATE_LIMIT_MAX_RETRIES,
            sleep=self._sleep,
        )

    def endpoint(self, config, feed_type: FeedType) -> str:
        configured = getattr(config.endpoints, ENDPOINT_FIELDS[feed_type])
        path = configured or self.default_endpoints.get(feed_type)
        if not path:
            raise RetrievalError(f"{self.name} has no endpoint for feed type {feed_type.value}")
        return path

    # ------------------------------------------------------------------
    # REST implementations
    # ------------------------------------------------------------------

    def _validate_rest(self, config) -> None:
        auth = config.authentication
        credentials = auth.credentials
        if auth.type == "API_KEY":
            if not credentials.api_key:
                raise ConfigurationError(f"{self.name} API key is required")
        elif not (credentials.client_id and credentials.client_secret):
            raise ConfigurationError(f"{self.name} client ID and secret are required")

        missing = [
            name for name in ("positions", "transactions", "cash_balances")
            if not getattr(config.endpoints, name)
        ]
        if missing:
            raise ConfigurationError(f"{self.name} endpoints missing: {', '.join(missing)}")

    def _test_rest(self, config) -> List[ConnectionTestResult]:
        def authenticate():
            if config.authentication.type == "API_KEY":
                return {"authType": "API_KEY"}
            self.refresh_token(config)
            return {"authType": config.authentication.type, "tokenObtained": True}

        results = [self.run_stage(ConnectionTestType.AUTHENTICATION, authenticate)]
        if not results[0].success:
            return results

        client = self.http_client(config, max_server_retries=0)
        endpoints = config.endpoints

        def connectivity():
            response = client.get(endpoints.account_information or "/accounts/info", timeout=20)
            return {"statusCode": response.status_code}

        def data_retrieval():
            body = client.get(self.endpoint(config, FeedType.POSITIONS), params={"page": 1, "size": 1}, timeout=30).json()
            return {"recordsAvailable": len(self.extract_items(body))}

        results.append(self.run_stage(ConnectionTestType.CONNECTIVITY, connectivity))
        results.append(self.run_stage(ConnectionTestType.DATA_RETRIEVAL, data_retrieval))

        if endpoints.order_submission:
            def order_submission():
                response = client.get(f"{endpoints.order_submission.rstrip('/')}/test", timeout=15)
                return {"statusCode": response.status_code, "dryRun": True}

            results.append(self.run_stage(ConnectionTestType.ORDER_SUBMISSION, order_submission))
        return results

    def feed_params(self, feed_type: FeedType, request: DataFeedRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {"asOfDate": (request.date_to or date.today()).isoformat()}
        if request.account_number:
            params["accountNumber"] = request.account_number
        if feed_type in (FeedType.TRANSACTIONS, FeedType.SETTLEMENTS, FeedType.CORPORATE_ACTIONS):
            start_param, end_param = self.date_range_params
            if request.date_from:
                params[start_param] = request.date_from.isoformat()
            if request.date_to:
                params[end_param] = request.date_to.isoformat()
        return params

    def extract_items(self, body: Any) -> List[Dict]:
        if isinstance(body, list):
            return body
        return body.get("data") or []

    def transform_record(self, item: Dict, feed_type: FeedType) -> Dict:
        return {self.field_aliases.get(key, to_snake(key)): value for key, value in item.items()}

    def _retrieve_via_api(self, connection: CustodianConnection, request: DataFeedRequest) -> FeedData:
        feed_type = self._feed_type(request)
        config = connection.connection_config
        path = self.endpoint(config, feed_type)
        params = self.feed_params(feed_type, request)
        client = self.http_client(config)
        page_size = self.settings.REST_PAGE_SIZE

        records: List[Dict] = []
        page = 1
        while True:
            body = client.get(path, params={**params, "page": page, "size": page_size}).json()
            items = self.extract_items(body)
            records.extend(self.transform_record(item, feed_type) for item in items)

            pagination = (body.get("pagination") or {}) if isinstance(body, dict) else {}
            if len(items) < page_size or not pagination.get("hasNext"):
                break
            page += 1
            self._sleep(self.settings.REST_PAGE_DELAY_SECONDS)

        logger.info(f"Retrieved {len(records)} {feed_type.value} records from {self.name} in {page} page(s)")
        return FeedData(
            records=records,
            metadata={
                "recordCount": len(records),
                "retrievedAt": datetime.now().isoformat(),
                "endpoint": path,
                "params": params,
                "source": "API",
                "pagesRetrieved": page,
            },
        )

    def order_payload(self, order: OrderDetails, request: OrderSubmissionRequest) -> Dict[str, Any]:
        payload = {
            "accountNumber": order.account_number,
            "symbol": order.symbol,
            "side": order.side,
            "quantity": order.quantity,
            "orderType": order.order_type,
            "timeInForce": order.time_in_force,
            "clientOrderId": order.internal_order_id,
            "portfolioId": request.portfolio_id,
        }
        if order.price is not None:
            payload["limitPrice"] = order.price
        if order.stop_price is not None:
            payload["stopPrice"] = order.stop_price
        if order.special_instructions:
            payload["specialInstructions"] = order.special_instructions
        return payload

    def _submit_via_api(self, connection: CustodianConnection, request: OrderSubmissionRequest) -> OrderSubmissionResponse:
        config = connection.connection_config
        path = config.endpoints.order_submission or "/orders"
        client = self.http_client(config)

        statuses: List[OrderStatus] = []
        errors: List[OrderSubmissionError] = []
        for index, order in enumerate(request.orders):
            if index:
                self._sleep(self.settings.ORDER_SUBMISSION_DELAY_SECONDS)
            try:
                validate_order(order)
                body = client.post(path, json=self.order_payload(order, request), timeout=30).json()
                statuses.append(OrderStatus(
                    internal_order_id=order.internal_order_id,
                    status="SUBMITTED",
                    custodian_order_id=body.get("orderReference") or body.get("orderId"),
                    status_message="Order submitted successfully",
                ))
            except (CustodianIntegrationError, ValueError) as e:
                logger.error(f"Order {order.internal_order_id} rejected by {self.name}: {e}")
                statuses.append(OrderStatus(
                    internal_order_id=order.internal_order_id,
                    status="REJECTED",
                    rejection_reason=str(e),
                ))
                errors.append(OrderSubmissionError(order.internal_order_id, "SUBMISSION_FAILED", str(e)))

        submitted = sum(1 for s in statuses if s.status == "SUBMITTED")
        if submitted == len(statuses) and statuses:
            overall = "SUCCESS"
        elif submitted:
            overall = "PARTIAL_SUCCESS"
        else:
            overall = "FAILED"

        logger.info(f"Submitted {submitted}/{len(statuses)} orders to {self.name}")
        return OrderSubmissionResponse(
            submission_id=new_id(),
            order_statuses=statuses,
            overall_status=overall,
            errors=errors,
        )

    def _documents_via_api(self, connection: CustodianConnection, request: DocumentRetrievalRequest) -> List[DocumentInfo]:
        config = connection.connection_config
        params: Dict[str, Any] = {"documentType": request.document_type.value}
        if request.account_number:
            params["accountNumber"] = request.account_number
        if request.date_from:
            params["fromDate"] = request.date_from.isoformat()
        if request.date_to:
            params["toDate"] = request.date_to.isoformat()

        body = self.http_client(config).get(config.endpoints.document_retrieval or "/documents", params=params).json()
        return [
            DocumentInfo(
                document_id=doc["documentReference"],
                file_name=doc["fileName"],
                size=int(doc.get("fileSize", 0)),
                date=parse_timestamp(doc.get("documentDate")),
                download_url=doc["downloadLink"],
                expiry=parse_timestamp(doc.get("expiration")),
            )
            for doc in self.extract_items(body)
        ]

    def _health_via_api(self, connection: CustodianConnection) -> bool:
        config = connection.connection_config
        try:
            response = self.http_client(config, max_server_retries=0).get(config.endpoints.health or "/health", timeout=10)
            return response.status_code == 200
        except (CustodianIntegrationError, ValueError) as e:
            logger.warning(f"{self.name} health check failed for {connection.id}: {e}")
            return False
