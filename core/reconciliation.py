import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from config.settings import settings as default_settings
from core.events import RECONCILIATION_COMPLETED, EventPublisher, LoggingEventPublisher, safe_publish
from core.models import (
    CustodianAlert,
    CustodianConnection,
    Discrepancy,
    FeedType,
    ReconciliationRequest,
    ReconciliationResponse,
    ReconciliationResult,
    ReconciliationStatus,
    ReconciliationSummary,
    ReconciliationType,
    new_id,
)

logger = logging.getLogger(__name__)

KEY_FIELDS = {
    ReconciliationType.POSITION: ("account_number", "symbol"),
    ReconciliationType.TRANSACTION: ("transaction_id",),
    ReconciliationType.CASH_BALANCE: ("account_number", "currency"),
}

COMPARED_FIELDS = {
    ReconciliationType.POSITION: ("quantity", "market_value"),
    ReconciliationType.TRANSACTION: ("symbol", "transaction_type", "quantity", "unit_price"),
    ReconciliationType.CASH_BALANCE: ("balance",),
}

VALUE_FIELDS = {
    ReconciliationType.POSITION: "market_value",
    ReconciliationType.TRANSACTION: "quantity",
    ReconciliationType.CASH_BALANCE: "balance",
}

FEED_TYPES = {
    ReconciliationType.POSITION: FeedType.POSITIONS,
    ReconciliationType.TRANSACTION: FeedType.TRANSACTIONS,
    ReconciliationType.CASH_BALANCE: FeedType.CASH_BALANCES,
}


@dataclass(frozen=True)
class ToleranceBand:
    absolute: float = 0.0
    relative: float = 0.0

    def allows(self, expected: float, actual: float) -> bool:
        allowed = max(self.absolute, self.relative * abs(expected))
        # Band edge is inclusive, with float rounding slack
        return abs(actual - expected) <= allowed + 1e-9


def default_tolerances(settings=default_settings) -> Dict[str, ToleranceBand]:
    return {
        "quantity": ToleranceBand(absolute=settings.QUANTITY_TOLERANCE),
        "unit_price": ToleranceBand(relative=settings.PRICE_TOLERANCE_BPS / 10000),
        "market_value": ToleranceBand(
            absolute=settings.MARKET_VALUE_TOLERANCE_ABS,
            relative=settings.MARKET_VALUE_TOLERANCE_BPS / 10000,
        ),
        "balance": ToleranceBand(absolute=settings.CASH_TOLERANCE),
    }


class PortfolioStore(Protocol):
    def get_positions(self, portfolio_id: str, as_of=None, account_number=None) -> List[Dict]:
        ...

    def get_transactions(self, portfolio_id: str, date_from=None, date_to=None, account_number=None) -> List[Dict]:
        ...

    def get_cash_balances(self, portfolio_id: str, as_of=None, account_number=None) -> List[Dict]:
        ...


def build_key(record: Dict, key_fields: Tuple[str, ...]) -> str:
    return "|".join(str(record.get(name, "")).strip() for name in key_fields)


def compare_field(name: str, expected: Any, actual: Any, tolerances: Dict[str, ToleranceBand]) -> Optional[Discrepancy]:
    """Return a Discrepancy when the two values differ, else None."""
    if isinstance(expected, (int, float)) and isinstance(actual, (int, float)):
        expected, actual = float(expected), float(actual)
        if expected == actual:
            return None
        difference = round(actual - expected, 6)
        percentage = round(difference / expected * 100, 4) if expected else None
        band = tolerances.get(name, ToleranceBand())
        return Discrepancy(
            field=name,
            expected=expected,
            actual=actual,
            difference=difference,
            percentage_difference=percentage,
            within_tolerance=band.allows(expected, actual),
        )

    if expected == actual:
        return None
    if isinstance(expected, str) and isinstance(actual, str) and expected.strip().upper() == actual.strip().upper():
        return None
    return Discrepancy(field=name, expected=expected, actual=actual, within_tolerance=False)


def compare_records(
    custodian: Dict,
    portfolio: Dict,
    fields: Tuple[str, ...],
    tolerances: Dict[str, ToleranceBand],
) -> List[Discrepancy]:
    discrepancies = []
    for name in fields:
        discrepancy = compare_field(name, portfolio.get(name), custodian.get(name), tolerances)
        if discrepancy is not None:
            discrepancies.append(discrepancy)
    return discrepancies


def _index(records: List[Dict], key_fields: Tuple[str, ...], side: str) -> Dict[str, Dict]:
    indexed: Dict[str, Dict] = {}
    for record in records:
        key = build_key(record, key_fields)
        if key in indexed:
            logger.warning(f"Duplicate {side} record for key {key}, keeping the last one")
        indexed[key] = record
    return indexed


def reconcile_records(
    custodian_records: List[Dict],
    portfolio_records: List[Dict],
    reconciliation_type: ReconciliationType,
    tolerances: Dict[str, ToleranceBand],
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[List[ReconciliationResult], bool]:
    """
    Diff custodian records against portfolio records on their natural key.

    Returns ``(results, complete)``. Keys present on only one side become
    UNMATCHED results carrying a ``presence`` discrepancy.
    """
    key_fields = KEY_FIELDS[reconciliation_type]
    fields = COMPARED_FIELDS[reconciliation_type]
    custodian_map = _index(custodian_records, key_fields, "custodian")
    portfolio_map = _index(portfolio_records, key_fields, "portfolio")

    results: List[ReconciliationResult] = []
    processed_keys = set()

    for key, custodian in custodian_map.items():
        if cancel_event is not None and cancel_event.is_set():
            return results, False

        portfolio = portfolio_map.get(key)
        if portfolio is None:
            results.append(ReconciliationResult(
                record_key=key,
                reconciliation_type=reconciliation_type,
                custodian_record=custodian,
                portfolio_record=None,
                discrepancies=[Discrepancy(field="presence", expected=None, actual="CUSTODIAN_ONLY")],
            ))
            continue

        processed_keys.add(key)
        try:
            discrepancies = compare_records(custodian, portfolio, fields, tolerances)
        except (TypeError, ValueError, ArithmeticError) as e:
            logger.error(f"Could not compare record {key}: {e}")
            discrepancies = [Discrepancy(field="record", expected=None, actual=f"comparison error: {e}")]

        results.append(ReconciliationResult(
            record_key=key,
            reconciliation_type=reconciliation_type,
            custodian_record=custodian,
            portfolio_record=portfolio,
            discrepancies=discrepancies,
        ))

    for key in sorted(portfolio_map):
        if key in processed_keys:
            continue
        if cancel_event is not None and cancel_event.is_set():
            return results, False
        results.append(ReconciliationResult(
            record_key=key,
            reconciliation_type=reconciliation_type,
            custodian_record=None,
            portfolio_record=portfolio_map[key],
            discrepancies=[Discrepancy(field="presence", expected="PORTFOLIO_ONLY", actual=None)],
        ))

    return results, True


def _value_of(result: ReconciliationResult) -> float:
    field = VALUE_FIELDS[result.reconciliation_type]
    record = result.custodian_record or result.portfolio_record or {}
    value = record.get(field)
    return float(value) if isinstance(value, (int, float)) else 0.0


def generate_summary(results: List[ReconciliationResult]) -> ReconciliationSummary:
    """Aggregate results. Depends on nothing but ``results``."""
    total = len(results)
    matched = sum(1 for r in results if r.status == ReconciliationStatus.MATCHED)
    reconciled_value = sum(_value_of(r) for r in results if r.status == ReconciliationStatus.MATCHED)

    discrepancy_amount = 0.0
    for result in results:
        value_field = VALUE_FIELDS[result.reconciliation_type]
        for discrepancy in result.material_discrepancies:
            if discrepancy.field == value_field and discrepancy.difference is not None:
                discrepancy_amount += abs(discrepancy.difference)
            elif discrepancy.field == "presence":
                discrepancy_amount += abs(_value_of(result))

    return ReconciliationSummary(
        total_records=total,
        matched_records=matched,
        unmatched_records=total - matched,
        discrepancy_count=sum(len(r.discrepancies) for r in results),
        material_discrepancies=sum(len(r.material_discrepancies) for r in results),
        reconciled_value=round(reconciled_value, 2),
        discrepancy_amount=round(discrepancy_amount, 2),
        accuracy_percentage=round(matched / total * 100, 2) if total else 100.0,
    )


def build_alerts(connection: CustodianConnection, results: List[ReconciliationResult]) -> List[CustodianAlert]:
    alerts = []
    for result in results:
        for discrepancy in result.material_discrepancies:
            alerts.append(CustodianAlert(
                connection_id=connection.id,
                tenant_id=connection.tenant_id,
                alert_type="RECONCILIATION_FAILED",
                severity="HIGH",
                title=f"Reconciliation discrepancy: {result.record_key}",
                description=(
                    f"{discrepancy.field} expected {discrepancy.expected} but custodian reported {discrepancy.actual}"
                ),
                metadata={
                    "recordKey": result.record_key,
                    "reconciliationType": result.reconciliation_type.value,
                    "field": discrepancy.field,
                    "difference": discrepancy.difference,
                },
            ))
    return alerts


class ReconciliationEngine:
    def __init__(
        self,
        portfolio_store: PortfolioStore,
        repository=None,
        publisher: Optional[EventPublisher] = None,
        tolerances: Optional[Dict[str, ToleranceBand]] = None,
    ):
        self.portfolio_store = portfolio_store
        self.repository = repository
        self.publisher = publisher or LoggingEventPublisher()
        self.tolerances = tolerances or default_tolerances()

    def portfolio_records(self, request: ReconciliationRequest, reconciliation_type: ReconciliationType) -> List[Dict]:
        if reconciliation_type == ReconciliationType.POSITION:
            return self.portfolio_store.get_positions(request.portfolio_id, request.as_of_date, request.account_number)
        if reconciliation_type == ReconciliationType.TRANSACTION:
            return self.portfolio_store.get_transactions(
                request.portfolio_id, request.as_of_date, request.as_of_date, request.account_number
            )
        return self.portfolio_store.get_cash_balances(request.portfolio_id, request.as_of_date, request.account_number)

    def reconcile(
        self,
        connection: CustodianConnection,
        request: ReconciliationRequest,
        fetch_custodian_records,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconciliationResponse:
        """
        Reconcile one connection against the portfolio.

        ``fetch_custodian_records(reconciliation_type)`` returns the validated
        custodian records for that type. Custodian and portfolio sides are
        fetched concurrently; FULL runs every type in turn. On a FULL run a
        type whose fetch fails is recorded in ``errors`` and the remaining
        types still reconcile.
        """
        full = request.reconciliation_type == ReconciliationType.FULL
        if full:
            types = [ReconciliationType.POSITION, ReconciliationType.TRANSACTION, ReconciliationType.CASH_BALANCE]
        else:
            types = [request.reconciliation_type]

        results: List[ReconciliationResult] = []
        errors: Dict[str, str] = {}
        complete = True
        for reconciliation_type in types:
            if cancel_event is not None and cancel_event.is_set():
                complete = False
                break

            with ThreadPoolExecutor(max_workers=2) as executor:
                custodian_future = executor.submit(fetch_custodian_records, reconciliation_type)
                portfolio_future = executor.submit(self.portfolio_records, request, reconciliation_type)
                try:
                    custodian_records = custodian_future.result()
                    portfolio_records = portfolio_future.result()
                except Exception as e:
                    if not full:
                        raise
                    logger.error(f"{reconciliation_type.value} reconciliation for {connection.id} skipped: {e}")
                    errors[reconciliation_type.value] = str(e)
                    continue

            type_results, type_complete = reconcile_records(
                custodian_records, portfolio_records, reconciliation_type, self.tolerances, cancel_event
            )
            results.extend(type_results)
            if not type_complete:
                complete = False
                break

        summary = generate_summary(results)
        alerts = build_alerts(connection, results)
        response = ReconciliationResponse(
            reconciliation_id=new_id(),
            connection_id=connection.id,
            reconciliation_type=request.reconciliation_type,
            summary=summary,
            results=results,
            alerts=alerts,
            complete=complete,
            errors=errors,
        )

        if not complete:
            logger.warning(f"Reconciliation {response.reconciliation_id} cancelled after {len(results)} results")
            return response

        if self.repository is not None:
            self.repository.store_reconciliation(response)
            self.repository.store_alerts(alerts)

        safe_publish(self.publisher, RECONCILIATION_COMPLETED, {
            "reconciliationId": response.reconciliation_id,
            "connectionId": connection.id,
            "tenantId": connection.tenant_id,
            "portfolioId": request.portfolio_id,
            "reconciliationType": request.reconciliation_type.value,
            "summary": {
                "totalRecords": summary.total_records,
                "matchedRecords": summary.matched_records,
                "unmatchedRecords": summary.unmatched_records,
                "accuracyPercentage": summary.accuracy_percentage,
            },
            "status": response.status,
            "errors": errors,
        })
        return response
