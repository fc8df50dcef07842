"""
Unit tests for the retrying custodian HTTP client.

Covers token refresh on 401, rate-limit waits, server-error backoff and
non-retryable client errors.
"""
from unittest.mock import Mock

import pytest
import requests

from core.errors import ConnectivityError, CustodianApiError
from integrations.http_client import CustodianHttpClient


def _response(status, headers=None, body=None):
    response = Mock(spec=requests.Response)
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = body or {}
    return response


@pytest.fixture
def token_source():
    source = Mock()
    source.current_token.return_value = "token-1"
    source.refresh.return_value = "token-2"
    return source


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(session, token_source, sleep):
    return CustodianHttpClient(
        base_url="https://api.example.com/v1/",
        source="SCHWAB",
        token_source=token_source,
        session=session,
        max_server_retries=5,
        backoff_base=2.0,
        backoff_cap=30.0,
        default_retry_after=300,
        max_rate_limit_retries=3,
        sleep=sleep,
    )


class TestRequestBuilding:
    """Tests for URL and header construction."""

    def test_get_joins_base_url_and_sets_bearer(self, client, session):
        """Verifies the path is joined to the base URL and the token sent as Bearer."""
        session.request.return_value = _response(200)

        client.get("/positions", params={"page": 1})

        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://api.example.com/v1/positions"
        assert kwargs["params"] == {"page": 1}
        assert kwargs["headers"]["Authorization"] == "Bearer token-1"
        assert kwargs["timeout"] == 30.0

    def test_api_key_header_without_scheme(self, session, token_source, sleep):
        """Verifies API-key clients send the raw key in X-API-Key."""
        token_source.current_token.return_value = "key-123"
        session.request.return_value = _response(200)
        client = CustodianHttpClient(
            "https://api.example.com", "X", token_source, auth_header="X-API-Key", auth_scheme=None,
            session=session, sleep=sleep,
        )

        client.get("/health", timeout=10)

        kwargs = session.request.call_args.kwargs
        assert kwargs["headers"]["X-API-Key"] == "key-123"
        assert "Authorization" not in kwargs["headers"]
        assert kwargs["timeout"] == 10

    def test_debug_log_redacts_credentials(self, client, session, caplog):
        """Verifies auth headers never reach the log."""
        session.request.return_value = _response(200)

        with caplog.at_level("DEBUG"):
            client.get("/positions")

        assert "token-1" not in caplog.text
        assert "***" in caplog.text


class TestUnauthorized:
    """Tests for 401 handling."""

    def test_refreshes_once_and_replays(self, client, session, token_source):
        """Verifies a 401 triggers exactly one refresh and a replay."""
        session.request.side_effect = [_response(401), _response(200)]

        response = client.get("/positions")

        assert response.status_code == 200
        token_source.refresh.assert_called_once()
        assert session.request.call_count == 2

    def test_second_401_raises(self, client, session, token_source):
        """Verifies a 401 after refresh is terminal."""
        session.request.side_effect = [_response(401), _response(401)]

        with pytest.raises(ConnectivityError) as exc_info:
            client.get("/positions")

        assert exc_info.value.status_code == 401
        token_source.refresh.assert_called_once()

    def test_failed_refresh_raises(self, client, session, token_source):
        """Verifies a refresh that yields no token is terminal."""
        token_source.refresh.return_value = None
        session.request.return_value = _response(401)

        with pytest.raises(ConnectivityError, match="refresh failed"):
            client.get("/positions")


class TestRateLimit:
    """Tests for 429 handling."""

    def test_waits_retry_after_header(self, client, session, sleep):
        """Verifies the retry-after header sets the wait."""
        session.request.side_effect = [_response(429, {"retry-after": "12"}), _response(200)]

        client.get("/positions")

        sleep.assert_called_once_with(12.0)

    def test_defaults_to_300_seconds(self, client, session, sleep):
        """Verifies a missing retry-after waits the default 300 seconds."""
        session.request.side_effect = [_response(429), _response(200)]

        client.get("/positions")

        sleep.assert_called_once_with(300.0)

    def test_rate_limit_retries_are_bounded(self, client, session, sleep):
        """Verifies persistent 429s raise after the retry budget."""
        session.request.return_value = _response(429, {"retry-after": "1"})

        with pytest.raises(ConnectivityError) as exc_info:
            client.get("/positions")

        assert exc_info.value.status_code == 429
        assert sleep.call_count == 3


class TestServerErrors:
    """Tests for 5xx and transport failures."""

    def test_backoff_schedule_is_capped(self, client):
        """Verifies delays double from 2s and cap at 30s."""
        assert [client.backoff_delay(n) for n in range(5)] == [2.0, 4.0, 8.0, 16.0, 30.0]

    def test_persistent_503_retries_five_times(self, client, session, sleep):
        """Verifies five backoff retries then a terminal ConnectivityError."""
        session.request.return_value = _response(503)

        with pytest.raises(ConnectivityError) as exc_info:
            client.get("/positions")

        assert exc_info.value.status_code == 503
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0, 8.0, 16.0, 30.0]
        assert session.request.call_count == 6

    def test_recovers_after_transient_error(self, client, session, sleep):
        """Verifies a success after a 502 is returned."""
        session.request.side_effect = [_response(502), _response(200, body={"data": []})]

        response = client.get("/positions")

        assert response.json() == {"data": []}
        sleep.assert_called_once_with(2.0)

    def test_transport_error_is_retried(self, client, session, sleep):
        """Verifies connection errors follow the server-error policy."""
        session.request.side_effect = [requests.ConnectionError("reset"), _response(200)]

        client.get("/positions")

        sleep.assert_called_once_with(2.0)

    def test_zero_retries_fails_fast(self, session, token_source, sleep):
        """Verifies clients built without retries raise on the first 5xx."""
        session.request.return_value = _response(500)
        client = CustodianHttpClient("https://x", "X", token_source, session=session, max_server_retries=0, sleep=sleep)

        with pytest.raises(ConnectivityError):
            client.get("/health")

        sleep.assert_not_called()


class TestClientErrors:
    """Tests for non-retryable 4xx responses."""

    def test_404_raises_api_error_without_retry(self, client, session, sleep):
        """Verifies other 4xx responses raise immediately."""
        session.request.return_value = _response(404)

        with pytest.raises(CustodianApiError) as exc_info:
            client.post("/orders", json={"symbol": "AAPL"})

        assert exc_info.value.status_code == 404
        assert session.request.call_count == 1
        sleep.assert_not_called()
