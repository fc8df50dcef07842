"""Event publishing and field encryption collaborators."""

import importlib
import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)

CONNECTION_CREATED = "custodian-connection-created"
DATA_FEED_PROCESSED = "custodian-data-feed-processed"
RECONCILIATION_COMPLETED = "custodian-reconciliation-completed"
ORDERS_SUBMITTED = "custodian-orders-submitted"
DOCUMENTS_RETRIEVED = "custodian-documents-retrieved"
CORRELATION_ANALYSIS_COMPLETED = "correlation-analysis-completed"
CORRELATION_ANOMALY_DETECTED = "correlation-anomaly-detected"


class EventPublisher(Protocol):
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class FieldEncryptor(Protocol):
    def encrypt_field(self, plaintext: str) -> Dict[str, str]:
        """Return ``{cipherText, iv, tag, salt}``."""
        ...

    def decrypt_field(self, record: Dict[str, str]) -> str:
        ...


class LoggingEventPublisher:
    """Publisher that only writes events to the log."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {topic}: {payload}")


def safe_publish(publisher: EventPublisher, topic: str, payload: Dict[str, Any]) -> None:
    """Publish without letting a broker failure fail the caller."""
    try:
        publisher.publish(topic, payload)
    except Exception as e:
        logger.error(f"Failed to publish event {topic}: {e}")


def load_collaborator(dotted_path: str):
    """Resolve ``module:attribute`` and instantiate it when it is a class."""
    module_name, _, attribute = dotted_path.partition(":")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if isinstance(target, type) else target
