"""
Custodian Reconciliation DAG - health sweep, then parallel FULL reconciliation
(positions, transactions and cash) of every configured connection.
"""

import logging
from datetime import date, datetime, timedelta

from airflow import DAG
from airflow.sdk.definitions.decorators import task

from config.settings import settings
from core.models import ReconciliationRequest, ReconciliationType
from core.service import build_service

logger = logging.getLogger(__name__)


@task
def monitor():
    """Health-check every active custodian connection."""
    service = build_service()
    service.registry.load_active()
    results = service.monitor_connections()
    return {"healthy": [c for c, ok in results.items() if ok], "unhealthy": [c for c, ok in results.items() if not ok]}


@task
def reconcile(health):
    """Reconcile each configured connection that passed the health check."""
    unhealthy = set(health["unhealthy"])
    connection_ids = [c for c in settings.RECON_CONNECTION_IDS if c not in unhealthy]
    skipped = [c for c in settings.RECON_CONNECTION_IDS if c in unhealthy]
    if skipped:
        logger.warning(f"Skipping unhealthy connections: {skipped}")

    service = build_service()
    request = ReconciliationRequest(
        portfolio_id=settings.RECON_PORTFOLIO_ID,
        reconciliation_type=ReconciliationType.FULL,
        as_of_date=date.today(),
    )
    responses, errors = service.reconcile_many([(c, request) for c in connection_ids])
    return {
        "runs": {
            connection_id: {
                "reconciliation_id": response.reconciliation_id,
                "status": response.status,
                "total": response.summary.total_records,
                "matched": response.summary.matched_records,
                "unmatched": response.summary.unmatched_records,
                "accuracy": response.summary.accuracy_percentage,
                "failed_types": response.errors,
            }
            for connection_id, response in responses.items()
        },
        "errors": errors,
        "skipped": skipped,
    }


@task
def summarize(results):
    """Log the reconciliation outcome of the run."""
    logger.info("=" * 70)
    logger.info("CUSTODIAN RECONCILIATION RUN")
    logger.info("=" * 70)
    for connection_id, run in results["runs"].items():
        logger.info(
            f"{connection_id}: {run['status']} - {run['matched']}/{run['total']} matched "
            f"({run['accuracy']}%)"
        )
        for failed_type, error in run.get("failed_types", {}).items():
            logger.info(f"{connection_id}: {failed_type} SKIPPED - {error}")
    for connection_id, error in results["errors"].items():
        logger.info(f"{connection_id}: FAILED - {error}")
    for connection_id in results["skipped"]:
        logger.info(f"{connection_id}: SKIPPED - unhealthy")
    logger.info("=" * 70)
    return {
        "completed": len(results["runs"]),
        "failed": len(results["errors"]),
        "skipped": len(results["skipped"]),
    }


with DAG(
    dag_id="custodian_recon",
    start_date=datetime(2024, 1, 1),
    schedule=None,
    catchup=False,
    default_args={
        "owner": "batch_processing",
        "retries": 3,
        "retry_delay": timedelta(seconds=10),
    },
) as dag:

    health = monitor()
    runs = reconcile(health)
    summary = summarize(runs)

    health >> runs >> summary
