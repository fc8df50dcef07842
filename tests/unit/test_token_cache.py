"""
Unit tests for the access token cache.
"""
import threading
import time
from datetime import datetime, timedelta

import pytest

from core.token_cache import TokenCache


class FakeClock:
    def __init__(self, start=datetime(2024, 1, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TokenCache(refresh_margin_seconds=600, clock=clock)


class TestExpiry:
    """Tests for expiry and the refresh margin."""

    def test_stored_token_is_returned_until_expiry(self, cache, clock):
        """Verifies a token is served until its expiry instant."""
        cache.store("SCHWAB:client-1", "abc", expires_in=3600)

        clock.advance(3599)
        assert cache.get("SCHWAB:client-1").access_token == "abc"

        clock.advance(1)
        assert cache.get("SCHWAB:client-1") is None

    def test_needs_refresh_inside_margin(self, cache, clock):
        """Verifies tokens within ten minutes of expiry are due."""
        cache.store("k", "abc", expires_in=3600)

        assert cache.needs_refresh("k") is False
        clock.advance(3000)
        assert cache.needs_refresh("k") is True
        assert cache.due_for_refresh() == ["k"]

    def test_short_lived_token_refreshes_at_half_life(self, cache, clock):
        """Verifies a lifetime shorter than the margin is not refetched on every call."""
        fetches = []

        def fetch():
            fetches.append(1)
            return "tok", 300

        for _ in range(5):
            assert cache.get_or_fetch("k", fetch) == "tok"
        assert len(fetches) == 1

        clock.advance(149)
        assert cache.needs_refresh("k") is False
        clock.advance(1)
        assert cache.needs_refresh("k") is True
        cache.get_or_fetch("k", fetch)
        assert len(fetches) == 2

    def test_unknown_key_needs_refresh(self, cache):
        """Verifies keys without a token are always due."""
        assert cache.needs_refresh("missing") is True

    def test_invalidate_drops_token(self, cache):
        """Verifies invalidated tokens are gone."""
        cache.store("k", "abc", expires_in=3600)

        cache.invalidate("k")

        assert cache.get("k") is None


class TestFetching:
    """Tests for get_or_fetch and refresh."""

    def test_fetches_once_then_reuses(self, cache):
        """Verifies a cached token avoids a second fetch."""
        calls = []

        def fetch():
            calls.append(1)
            return "tok", 3600

        assert cache.get_or_fetch("k", fetch) == "tok"
        assert cache.get_or_fetch("k", fetch) == "tok"
        assert len(calls) == 1

    def test_refresh_always_fetches(self, cache):
        """Verifies refresh replaces a still-valid token."""
        cache.store("k", "old", expires_in=3600)

        assert cache.refresh("k", lambda: ("new", 3600)) == "new"
        assert cache.get("k").access_token == "new"

    def test_concurrent_callers_share_one_fetch(self, cache):
        """Verifies two threads needing the same token authenticate once."""
        calls = []

        def slow_fetch():
            calls.append(1)
            time.sleep(0.05)
            return "tok", 3600

        threads = [threading.Thread(target=cache.get_or_fetch, args=("k", slow_fetch)) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(calls) == 1
