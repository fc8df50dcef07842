"""
Connection registry: cached custodian connections, per-connection locks
and the periodic health sweep.
"""

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional

from config.settings import settings as default_settings
from core.errors import ConfigurationError, NotFoundError
from core.models import (
    ConnectionErrorEntry,
    ConnectionStatus,
    CustodianConnection,
    CustodianType,
)
from core.token_cache import TokenCache

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    def __init__(
        self,
        repository=None,
        adapters: Optional[Dict] = None,
        token_cache: Optional[TokenCache] = None,
        settings=default_settings,
        max_workers: Optional[int] = None,
    ):
        self.repository = repository
        self.adapters = adapters or {}
        self.token_cache = token_cache or TokenCache(settings.TOKEN_REFRESH_MARGIN_SECONDS)
        self.settings = settings
        self.max_workers = max_workers or settings.MAX_PARALLEL_CONNECTIONS
        self._connections: Dict[str, CustodianConnection] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get_adapter(self, custodian_type: CustodianType):
        adapter = self.adapters.get(CustodianType(custodian_type))
        if adapter is None:
            raise ConfigurationError(f"No adapter registered for custodian {custodian_type}")
        return adapter

    def lock_for(self, connection_id: str) -> threading.Lock:
        """One in-flight operation per connection id."""
        with self._guard:
            return self._locks.setdefault(connection_id, threading.Lock())

    def register(self, connection: CustodianConnection) -> None:
        with self._guard:
            self._connections[connection.id] = connection
        logger.info(f"Registered connection {connection.id} ({connection.custodian_type.value})")

    def get_connection(self, connection_id: str) -> CustodianConnection:
        connection = self._connections.get(connection_id)
        if connection is not None:
            return connection

        if self.repository is not None:
            connection = self.repository.load_connection(connection_id)
        if connection is None:
            raise NotFoundError(f"Custodian connection not found: {connection_id}")

        with self._guard:
            return self._connections.setdefault(connection_id, connection)

    def snapshot(self, connection_id: str) -> CustodianConnection:
        return copy.deepcopy(self.get_connection(connection_id))

    def deactivate(self, connection_id: str, user_id: Optional[str] = None) -> CustodianConnection:
        with self.lock_for(connection_id):
            connection = self.get_connection(connection_id)
            connection.deactivate(user_id)
            if self.repository is not None:
                self.repository.save_connection(connection)
        logger.info(f"Deactivated connection {connection_id}")
        return connection

    def active_connections(self) -> List[CustodianConnection]:
        with self._guard:
            return [c for c in self._connections.values() if c.is_active]

    def load_active(self) -> int:
        """Warm the cache from persistence."""
        if self.repository is None:
            return 0
        loaded = self.repository.load_active_connections()
        with self._guard:
            for connection in loaded:
                self._connections.setdefault(connection.id, connection)
        logger.info(f"Loaded {len(loaded)} active connections")
        return len(loaded)

    def monitor_connections(self, cancel_event: Optional[threading.Event] = None) -> Dict[str, bool]:
        """Health-check every active connection; one failure never stops the rest."""
        connections = self.active_connections()
        if not connections:
            return {}

        def check(connection: CustodianConnection) -> Optional[bool]:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Skipping health check for {connection.id}: cancelled")
                return None
            with self.lock_for(connection.id):
                return self._check_one(connection)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            outcomes = list(executor.map(check, connections))

        return {c.id: healthy for c, healthy in zip(connections, outcomes) if healthy is not None}

    def _check_one(self, connection: CustodianConnection) -> bool:
        now = datetime.now()
        connection.last_connection_attempt = now
        healthy = False
        try:
            healthy = self.get_adapter(connection.custodian_type).health_check(connection)
            if healthy:
                connection.status = ConnectionStatus.CONNECTED
                connection.connection_retries = 0
                connection.last_successful_connection = now
            else:
                connection.status = ConnectionStatus.ERROR
                connection.connection_retries += 1
                if connection.connection_retries >= connection.max_retries:
                    connection.record_error(ConnectionErrorEntry(
                        timestamp=now,
                        error_code="HEALTH_CHECK_FAILED",
                        error_message="Connection health check failed after maximum retries",
                        retry_attempt=connection.connection_retries,
                    ), self.settings.ERROR_LOG_LIMIT)
                    logger.warning(
                        f"Connection {connection.id} unhealthy after {connection.connection_retries} attempts"
                    )
        except Exception as e:
            connection.status = ConnectionStatus.ERROR
            connection.connection_retries += 1
            connection.record_error(ConnectionErrorEntry(
                timestamp=now,
                error_code="CONNECTION_ERROR",
                error_message=str(e),
                retry_attempt=connection.connection_retries,
            ), self.settings.ERROR_LOG_LIMIT)
            logger.error(f"Health check errored for connection {connection.id}: {e}")

        connection.updated_at = now
        if self.repository is not None:
            try:
                self.repository.save_connection(connection)
            except Exception as e:
                logger.error(f"Failed to persist status of connection {connection.id}: {e}")
        return healthy

    def refresh_due_tokens(self) -> List[str]:
        """Refresh every token inside the refresh margin; returns the refreshed connection ids."""
        due = set(self.token_cache.due_for_refresh())
        if not due:
            return []

        refreshed = []
        for connection in self.active_connections():
            adapter = self.adapters.get(connection.custodian_type)
            if adapter is None or adapter.token_key(connection.connection_config) not in due:
                continue
            try:
                adapter.refresh_token(connection.connection_config)
                refreshed.append(connection.id)
            except Exception as e:
                logger.error(f"Token refresh failed for connection {connection.id}: {e}")
        if refreshed:
            logger.info(f"Refreshed tokens for {len(refreshed)} connections")
        return refreshed
