"""
Unit Test Configuration
=======================
Fixtures for pure logic tests - NO NETWORK ALLOWED.

All unit tests should be completely isolated from:
- Network (RPC, HTTP, Telegram)
- The real database file (use the tmp_path backed ``db`` fixture)
"""

import pytest


# ============================================================================
# AUTOUSE: ENFORCE I/O ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_unit_tests(monkeypatch):
    """
    Automatically disable all network I/O for unit tests.
    Any test that accidentally tries to make a network call will fail.
    """
    def block_network(*args, **kwargs):
        raise RuntimeError(
            "Network I/O detected in unit test! "
            "Unit tests must be pure logic with no external dependencies. "
            "Inject a mock client instead."
        )

    # Block the HTTP client under both solana-py and the price feed
    monkeypatch.setattr("httpx.AsyncClient.send", block_network)
    monkeypatch.setattr("config.settings.Settings.SILENT_MODE", True)


# ============================================================================
# COMPONENT FIXTURES
# ============================================================================


@pytest.fixture
def cluster():
    """Three mock RPC endpoints."""
    from tests.mocks import MockRpcCluster
    return MockRpcCluster(["https://rpc-a", "https://rpc-b", "https://rpc-c"])


@pytest.fixture
def rpc(cluster):
    """Failover client over the mock cluster."""
    return cluster.failover_client(timeout=2.0)


@pytest.fixture
def feed():
    from tests.mocks import MockPriceFeed
    return MockPriceFeed({"SOL": "100", "ETH": "3000", "BTC": "60000", "USDC": "1", "USDT": "1"})


@pytest.fixture
def notifier():
    from tests.mocks import RecordingNotifier
    return RecordingNotifier()


@pytest.fixture
def keys():
    from tests.mocks import MockKeyStore
    return MockKeyStore("12345")
