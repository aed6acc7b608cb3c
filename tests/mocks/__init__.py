"""
Perps Tracker Test Mocks
========================
Reusable mock classes for isolated testing.
"""

from tests.mocks.mock_feeds import MockPriceFeed
from tests.mocks.mock_rpc import MockAccountInfo, MockRpcClient, MockRpcCluster, solana_rpc_error
from tests.mocks.mock_wallet import MockKeyStore, RecordingNotifier, mock_keypair

__all__ = [
    "MockPriceFeed",
    "MockAccountInfo",
    "MockRpcClient",
    "MockRpcCluster",
    "MockKeyStore",
    "RecordingNotifier",
    "mock_keypair",
    "solana_rpc_error",
]
