"""
Mock Wallet & Notifier
======================
Deterministic keypairs, a counting key store and a recording notifier.
"""

from typing import List, Tuple

from solders.keypair import Keypair

from src.shared.infrastructure.signer import StaticKeyStore


def mock_keypair(seed: int = 7) -> Keypair:
    """Deterministic keypair from a one-byte seed."""
    return Keypair.from_seed(bytes([seed]) * 32)


class MockKeyStore(StaticKeyStore):
    """
    StaticKeyStore pre-loaded with one owner.

    Usage:
        keys = MockKeyStore("12345")
        signer = keys.get_signer("12345")
    """

    def __init__(self, owner_id: str = "12345", keypair: Keypair = None):
        super().__init__()
        self.owner_id = owner_id
        self.keypair = keypair or mock_keypair()
        self.add(owner_id, self.keypair)
        self.call_count = 0

    def get_signer(self, owner_id: str):
        self.call_count += 1
        return super().get_signer(owner_id)


class RecordingNotifier:
    """Collects (owner_id, text) pairs instead of sending them."""

    def __init__(self, fail: bool = False):
        self.messages: List[Tuple[str, str]] = []
        self.fail = fail

    async def notify(self, owner_id: str, text: str) -> None:
        if self.fail:
            raise RuntimeError("notifier down")
        self.messages.append((owner_id, text))

    def texts(self, owner_id: str = None) -> List[str]:
        return [t for o, t in self.messages if owner_id is None or o == owner_id]
