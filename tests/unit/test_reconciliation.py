"""
Unit tests for reconciliation.

Covers tolerance bands, record diffing, summary aggregation, alerts and
the engine's persistence and event behaviour.
"""
import threading
from datetime import date
from unittest.mock import Mock

import pytest

from core.errors import RetrievalError
from core.events import RECONCILIATION_COMPLETED
from core.models import (
    ReconciliationRequest,
    ReconciliationStatus,
    ReconciliationType,
)
from core.reconciliation import (
    ReconciliationEngine,
    ToleranceBand,
    build_alerts,
    compare_field,
    default_tolerances,
    generate_summary,
    reconcile_records,
)


@pytest.fixture
def tolerances(test_settings):
    return default_tolerances(test_settings)


def _pos(symbol, quantity, market_value, account="A1"):
    return {"account_number": account, "symbol": symbol, "quantity": quantity, "market_value": market_value}


@pytest.fixture
def custodian_positions():
    return [_pos("AAPL", 100.0, 18925.0), _pos("MSFT", 50.0, 20000.0), _pos("KO", 10.0, 600.0)]


@pytest.fixture
def portfolio_positions():
    return [_pos("AAPL", 100.0, 18925.0), _pos("MSFT", 45.0, 18000.0), _pos("PFE", 20.0, 580.0)]


class TestToleranceBand:
    """Tests for tolerance checks."""

    def test_absolute_band_edge_is_inclusive(self):
        """Verifies a difference equal to the band is within tolerance."""
        assert ToleranceBand(absolute=0.01).allows(100.0, 100.01)
        assert not ToleranceBand(absolute=0.01).allows(100.0, 100.02)

    def test_relative_band_scales_with_expected(self):
        """Verifies basis-point bands scale with the expected value."""
        band = ToleranceBand(relative=0.0001)

        assert band.allows(1_000_000.0, 1_000_100.0)
        assert not band.allows(1_000_000.0, 1_000_101.0)

    def test_default_bands_come_from_settings(self, test_settings):
        """Verifies tolerance values are configuration."""
        test_settings.QUANTITY_TOLERANCE = 0.5

        assert default_tolerances(test_settings)["quantity"].absolute == 0.5


class TestCompareField:
    """Tests for single-field comparison."""

    def test_equal_numbers_produce_no_discrepancy(self, tolerances):
        """Verifies identical values are not reported."""
        assert compare_field("quantity", 10, 10.0, tolerances) is None

    def test_small_difference_is_immaterial(self, tolerances):
        """Verifies a difference inside the band is recorded but within tolerance."""
        discrepancy = compare_field("market_value", 18925.0, 18925.005, tolerances)

        assert discrepancy.within_tolerance is True
        assert discrepancy.difference == pytest.approx(0.005)

    def test_large_difference_is_material(self, tolerances):
        """Verifies difference and percentage are populated."""
        discrepancy = compare_field("quantity", 45.0, 50.0, tolerances)

        assert discrepancy.within_tolerance is False
        assert discrepancy.difference == 5.0
        assert discrepancy.percentage_difference == pytest.approx(11.1111)

    def test_strings_compare_case_insensitively(self, tolerances):
        """Verifies text fields ignore case and padding."""
        assert compare_field("transaction_type", "buy", " BUY ", tolerances) is None
        assert compare_field("transaction_type", "BUY", "SELL", tolerances).within_tolerance is False

    def test_zero_expected_has_no_percentage(self, tolerances):
        """Verifies a zero expected value leaves the percentage empty."""
        assert compare_field("quantity", 0.0, 1.0, tolerances).percentage_difference is None


class TestReconcileRecords:
    """Tests for record diffing."""

    def test_matched_mismatched_and_one_sided(self, custodian_positions, portfolio_positions, tolerances):
        """Verifies each key lands in the right bucket."""
        results, complete = reconcile_records(
            custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances
        )
        by_key = {r.record_key: r for r in results}

        assert complete is True
        assert by_key["A1|AAPL"].status == ReconciliationStatus.MATCHED
        assert by_key["A1|AAPL"].discrepancies == []
        assert by_key["A1|MSFT"].status == ReconciliationStatus.UNMATCHED
        assert {d.field for d in by_key["A1|MSFT"].discrepancies} == {"quantity", "market_value"}
        assert by_key["A1|KO"].discrepancies[0].actual == "CUSTODIAN_ONLY"
        assert by_key["A1|PFE"].discrepancies[0].expected == "PORTFOLIO_ONLY"

    def test_within_tolerance_difference_still_matches(self, tolerances):
        """Verifies immaterial differences keep the record MATCHED."""
        results, _ = reconcile_records(
            [_pos("AAPL", 100.0, 18925.001)], [_pos("AAPL", 100.0, 18925.0)], ReconciliationType.POSITION, tolerances
        )

        assert results[0].status == ReconciliationStatus.MATCHED
        assert len(results[0].discrepancies) == 1

    def test_transactions_keyed_by_id(self, tolerances):
        """Verifies transactions compare on transaction id."""
        custodian = [{"transaction_id": "T1", "symbol": "AAPL", "transaction_type": "BUY", "quantity": 10.0, "unit_price": 100.0}]
        portfolio = [{"transaction_id": "T1", "symbol": "AAPL", "transaction_type": "BUY", "quantity": 10.0, "unit_price": 100.04}]

        results, _ = reconcile_records(custodian, portfolio, ReconciliationType.TRANSACTION, tolerances)

        assert results[0].record_key == "T1"
        assert results[0].status == ReconciliationStatus.MATCHED

    def test_comparison_error_becomes_unmatched(self, tolerances):
        """Verifies a record that cannot be compared is UNMATCHED, not raised."""
        class Incomparable:
            def __eq__(self, other):
                raise TypeError("cannot compare")

        results, complete = reconcile_records(
            [_pos("AAPL", Incomparable(), 1.0)], [_pos("AAPL", 4.0, 1.0)], ReconciliationType.POSITION, tolerances
        )

        assert complete is True
        assert results[0].discrepancies[0].field == "record"
        assert results[0].status == ReconciliationStatus.UNMATCHED

    def test_cancel_flag_stops_early(self, custodian_positions, portfolio_positions, tolerances):
        """Verifies a set cancel flag returns an incomplete run."""
        cancel = threading.Event()
        cancel.set()

        results, complete = reconcile_records(
            custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances, cancel
        )

        assert complete is False
        assert results == []

    def test_duplicate_keys_keep_last(self, tolerances, caplog):
        """Verifies duplicate keys are logged and the last record wins."""
        results, _ = reconcile_records(
            [_pos("AAPL", 1.0, 1.0), _pos("AAPL", 2.0, 2.0)], [_pos("AAPL", 2.0, 2.0)],
            ReconciliationType.POSITION, tolerances,
        )

        assert len(results) == 1
        assert results[0].status == ReconciliationStatus.MATCHED
        assert "Duplicate custodian record" in caplog.text


class TestGenerateSummary:
    """Tests for summary aggregation."""

    def test_summary_counts(self, custodian_positions, portfolio_positions, tolerances):
        """Verifies totals, accuracy and amounts."""
        results, _ = reconcile_records(custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances)

        summary = generate_summary(results)

        assert summary.total_records == 4
        assert summary.matched_records == 1
        assert summary.unmatched_records == 3
        assert summary.discrepancy_count == 4
        assert summary.material_discrepancies == 4
        assert summary.reconciled_value == 18925.0
        assert summary.discrepancy_amount == 2000.0 + 600.0 + 580.0
        assert summary.accuracy_percentage == 25.0

    def test_empty_run_is_fully_accurate(self):
        """Verifies an empty run reports 100% accuracy."""
        summary = generate_summary([])

        assert summary.total_records == 0
        assert summary.accuracy_percentage == 100.0

    def test_reconciliation_is_idempotent(self, custodian_positions, portfolio_positions, tolerances):
        """Verifies the same snapshots always give the same summary."""
        first, _ = reconcile_records(custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances)
        second, _ = reconcile_records(custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances)

        assert generate_summary(first) == generate_summary(second)


class TestBuildAlerts:
    """Tests for alert creation."""

    def test_one_high_alert_per_material_discrepancy(self, rest_connection, custodian_positions, portfolio_positions, tolerances):
        """Verifies each material discrepancy raises a HIGH alert."""
        results, _ = reconcile_records(custodian_positions, portfolio_positions, ReconciliationType.POSITION, tolerances)

        alerts = build_alerts(rest_connection, results)

        assert len(alerts) == 4
        assert {a.severity for a in alerts} == {"HIGH"}
        assert {a.alert_type for a in alerts} == {"RECONCILIATION_FAILED"}
        assert alerts[0].connection_id == rest_connection.id


class TestReconciliationEngine:
    """Tests for the engine's orchestration."""

    @pytest.fixture
    def store(self, portfolio_positions):
        store = Mock()
        store.get_positions.return_value = portfolio_positions
        store.get_transactions.return_value = []
        store.get_cash_balances.return_value = [{"account_number": "A1", "currency": "USD", "balance": 100.0}]
        return store

    def test_position_run_persists_and_publishes(
        self, store, rest_connection, custodian_positions, publisher, tolerances
    ):
        """Verifies a complete run stores results and alerts and publishes once."""
        repository = Mock()
        engine = ReconciliationEngine(store, repository, publisher, tolerances)
        request = ReconciliationRequest("P1", ReconciliationType.POSITION, as_of_date=date(2024, 1, 1))

        response = engine.reconcile(rest_connection, request, lambda t: custodian_positions)

        assert response.status == "COMPLETED_WITH_DISCREPANCIES"
        store.get_positions.assert_called_once_with("P1", date(2024, 1, 1), None)
        repository.store_reconciliation.assert_called_once_with(response)
        repository.store_alerts.assert_called_once_with(response.alerts)
        assert publisher.topics() == [RECONCILIATION_COMPLETED]
        assert publisher.events[0][1]["summary"]["matchedRecords"] == 1

    def test_full_run_covers_every_type(self, store, rest_connection, publisher, tolerances):
        """Verifies FULL reconciles positions, transactions and cash."""
        fetched = []

        def fetch(reconciliation_type):
            fetched.append(reconciliation_type)
            if reconciliation_type == ReconciliationType.CASH_BALANCE:
                return [{"account_number": "A1", "currency": "USD", "balance": 100.0}]
            return []

        engine = ReconciliationEngine(store, None, publisher, tolerances)
        response = engine.reconcile(rest_connection, ReconciliationRequest("P1", ReconciliationType.FULL), fetch)

        assert sorted(t.value for t in fetched) == ["CASH_BALANCE", "POSITION", "TRANSACTION"]
        types = {r.reconciliation_type for r in response.results}
        assert ReconciliationType.CASH_BALANCE in types
        assert ReconciliationType.POSITION in types

    def test_cancelled_run_is_not_persisted(self, store, rest_connection, custodian_positions, publisher, tolerances):
        """Verifies cancelled runs skip persistence and events."""
        repository = Mock()
        cancel = threading.Event()
        cancel.set()
        engine = ReconciliationEngine(store, repository, publisher, tolerances)

        response = engine.reconcile(
            rest_connection, ReconciliationRequest("P1"), lambda t: custodian_positions, cancel
        )

        assert response.status == "CANCELLED"
        repository.store_reconciliation.assert_not_called()
        assert publisher.events == []

    def test_publisher_failure_does_not_fail_run(self, store, rest_connection, custodian_positions, tolerances, caplog):
        """Verifies a broken publisher is logged and ignored."""
        broken = Mock()
        broken.publish.side_effect = RuntimeError("broker down")
        engine = ReconciliationEngine(store, None, broken, tolerances)

        response = engine.reconcile(rest_connection, ReconciliationRequest("P1"), lambda t: custodian_positions)

        assert response.summary.total_records == 4
        assert "broker down" in caplog.text

    def test_transactions_use_custodian_date_window(self, store, rest_connection, publisher, tolerances):
        """Verifies earlier portfolio transactions are not reported as breaks."""
        as_of = date(2024, 1, 2)
        history = [
            {"account_number": "A1", "transaction_id": "T1", "symbol": "AAPL", "quantity": 5.0,
             "trade_date": date(2024, 1, 1)},
            {"account_number": "A1", "transaction_id": "T2", "symbol": "MSFT", "quantity": 10.0, "trade_date": as_of},
        ]

        def get_transactions(portfolio_id, date_from=None, date_to=None, account_number=None):
            return [
                t for t in history
                if (date_from is None or t["trade_date"] >= date_from) and (date_to is None or t["trade_date"] <= date_to)
            ]

        store.get_transactions.side_effect = get_transactions
        engine = ReconciliationEngine(store, None, publisher, tolerances)
        request = ReconciliationRequest("P1", ReconciliationType.TRANSACTION, as_of_date=as_of)

        response = engine.reconcile(rest_connection, request, lambda t: [dict(history[1])])

        store.get_transactions.assert_called_once_with("P1", as_of, as_of, None)
        assert response.status == "COMPLETED"
        assert response.summary.unmatched_records == 0
        assert response.summary.accuracy_percentage == 100.0
        assert response.alerts == []

    def test_full_run_keeps_results_when_one_type_fails(
        self, store, rest_connection, custodian_positions, publisher, tolerances, caplog
    ):
        """Verifies a failed fetch is recorded and the other types still complete."""
        repository = Mock()

        def fetch(reconciliation_type):
            if reconciliation_type == ReconciliationType.TRANSACTION:
                raise RetrievalError("No files found matching pattern: TXN_20240102_*.txt")
            if reconciliation_type == ReconciliationType.CASH_BALANCE:
                return [{"account_number": "A1", "currency": "USD", "balance": 100.0}]
            return custodian_positions

        engine = ReconciliationEngine(store, repository, publisher, tolerances)
        response = engine.reconcile(rest_connection, ReconciliationRequest("P1", ReconciliationType.FULL), fetch)

        assert response.status == "PARTIAL"
        assert response.errors == {"TRANSACTION": "No files found matching pattern: TXN_20240102_*.txt"}
        types = {r.reconciliation_type for r in response.results}
        assert types == {ReconciliationType.POSITION, ReconciliationType.CASH_BALANCE}
        repository.store_reconciliation.assert_called_once_with(response)
        assert publisher.events[0][1]["status"] == "PARTIAL"
        assert publisher.events[0][1]["errors"] == response.errors
        assert "TRANSACTION reconciliation for conn-1 skipped" in caplog.text

    def test_single_type_fetch_failure_propagates(self, store, rest_connection, publisher, tolerances):
        """Verifies a non-FULL run has nothing to fall back on and raises."""
        engine = ReconciliationEngine(store, None, publisher, tolerances)

        def fetch(reconciliation_type):
            raise RetrievalError("custodian unavailable")

        with pytest.raises(RetrievalError):
            engine.reconcile(rest_connection, ReconciliationRequest("P1", ReconciliationType.POSITION), fetch)
        assert publisher.events == []
