"""
Key Store Adapters
==================
Resolves the signing keypair for an owner id.

Key generation, import/export and encrypted storage belong to the wallet
service; this module only hands out ready Keypairs. Private key material
is never logged.
"""

import os
from typing import Dict, Optional, Protocol

from solders.keypair import Keypair

from src.shared.system.logging import Logger


class KeyStore(Protocol):
    def get_signer(self, owner_id: str) -> Optional[Keypair]: ...


class StaticKeyStore:
    """In-memory owner id -> Keypair mapping."""

    def __init__(self, keys: Dict[str, Keypair] = None):
        self._keys: Dict[str, Keypair] = dict(keys or {})

    def add(self, owner_id: str, keypair: Keypair) -> None:
        self._keys[owner_id] = keypair

    def get_signer(self, owner_id: str) -> Optional[Keypair]:
        return self._keys.get(owner_id)


class EnvKeyStore(StaticKeyStore):
    """
    Single-operator key store loaded from SOLANA_PRIVATE_KEY (base58).

    The key is registered under ``owner_id`` (PERPS_OWNER_ID, default
    "local"); any other owner id has no signer.
    """

    def __init__(self, owner_id: str = None, env_var: str = "SOLANA_PRIVATE_KEY"):
        super().__init__()
        self.owner_id = owner_id or os.getenv("PERPS_OWNER_ID", "local")
        keypair = self._load_keypair(env_var)
        if keypair is not None:
            self.add(self.owner_id, keypair)

    @staticmethod
    def _load_keypair(env_var: str) -> Optional[Keypair]:
        pk = os.getenv(env_var)
        if not pk:
            Logger.warning(f"[KEYS] {env_var} not set")
            return None
        try:
            return Keypair.from_base58_string(pk)
        except ValueError as e:
            Logger.error(f"[KEYS] Invalid key format in {env_var}: {type(e).__name__}")
            return None
