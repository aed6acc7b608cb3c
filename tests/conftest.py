"""
Perps Tracker Test Configuration
================================
Shared fixtures and pytest markers for the test suite.
"""

import pytest
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture(autouse=True, scope="session")
def session_log_dir(tmp_path_factory):
    """Session file log goes to a temp dir, never the repo's logs/."""
    from config.settings import Settings

    original = Settings.LOG_DIR
    Settings.LOG_DIR = str(tmp_path_factory.mktemp("logs"))
    yield Settings.LOG_DIR
    Settings.LOG_DIR = original


@pytest.fixture
def mock_settings(monkeypatch):
    """Keep tests quiet and fast: no console output, one-poll timeouts."""
    monkeypatch.setattr("config.settings.Settings.SILENT_MODE", True)
    monkeypatch.setattr("config.settings.Settings.RPC_TIMEOUT_SEC", 2.0)
    yield


@pytest.fixture
def owner():
    """Fixed owner address: bytes 1..32."""
    from solders.pubkey import Pubkey
    return Pubkey(bytes(range(1, 33)))


@pytest.fixture
def db(tmp_path):
    """Fresh PersistenceDB singleton backed by a temp file."""
    from src.shared.system.persistence import PersistenceDB

    PersistenceDB.reset()
    database = PersistenceDB(str(tmp_path / "perps_test.db"))
    yield database
    PersistenceDB.reset()
