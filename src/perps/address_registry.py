"""
Perps Address Registry
======================
Static market registry and program-derived address (PDA) derivation for
the Jupiter Perpetuals program.

Every address a request references is a pure function of the owner, the
market, the side and a per-owner request counter:

    position  = PDA("position", owner, pool, custody, collateral_custody, side)
    request   = PDA("position_request", position, counter_u64_le, change)

Longs are collateralized in the market's own asset, shorts always in USDC.
``collateral_market_for`` is the single place that rule lives.

References:
- Program ID: PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu
- Pool (JLP): 5BUwFW4nRbftYTDMbgxykoFWqWHPzahFSNAaaaJtVKsq
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from src.perps.types import (
    DerivedAccountSet,
    Market,
    RequestKind,
    RequestChange,
    Side,
)
from src.shared.system.logging import Logger


# =============================================================================
# CONSTANTS
# =============================================================================

PERPS_PROGRAM_ID = Pubkey.from_string("PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu")
JLP_POOL = Pubkey.from_string("5BUwFW4nRbftYTDMbgxykoFWqWHPzahFSNAaaaJtVKsq")

PERPETUALS_PDA, _ = Pubkey.find_program_address([b"perpetuals"], PERPS_PROGRAM_ID)
EVENT_AUTHORITY_PDA, _ = Pubkey.find_program_address([b"__event_authority"], PERPS_PROGRAM_ID)

# Anchor encodes an absent optional account as the program id itself
REFERRAL_PLACEHOLDER = PERPS_PROGRAM_ID

STABLE_COLLATERAL = "USDC"


def _market(symbol, custody, custody_token_account, oracle, mint, decimals, tradable=True):
    return Market(
        symbol=symbol,
        custody=Pubkey.from_string(custody),
        custody_token_account=Pubkey.from_string(custody_token_account),
        oracle=Pubkey.from_string(oracle),
        mint=Pubkey.from_string(mint),
        decimals=decimals,
        tradable=tradable,
    )


MARKETS: Dict[str, Market] = {
    m.symbol: m
    for m in (
        _market(
            "SOL",
            "7xS2gz2bTp3fwCC7knJvUWTEU9Tycczu6VhJYKgi1wdz",
            "3x6CbBGFoJnKsJkUj3FHGN4WfCb6nFfFT5G36fq8n1oU",
            "FYq2BWQ1V5P1WFBqr3qB2Kb5yHVvSv7upzKodgQE5zXh",
            "So11111111111111111111111111111111111111112",
            9,
        ),
        _market(
            "ETH",
            "AQCGyheWPLeo6Qp9WpYS9m3Qj479t7R636N9ey1rEjEn",
            "FqRDpM9Z5xHJJTNJTEEwLKBc9NXe7ENkwSAy4ARMRJR",
            "AFZnHPzy4mvVCffrVwhewHbFc93uTHvDSFrVH7GtfXF1",
            "7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs",
            8,
        ),
        _market(
            "BTC",
            "5Pv3gM9JrFFH883SWAhvJC9RPYmo8UNxuFtv5bMMALkm",
            "7TGG8ZoN67VBgpWPMYcXnXLDvr8FBXHNVUdp7jSdMrDH",
            "hUqAT1KQ7eW1i6Csp9CXYtpPfSAvi835V7wKi5fRfmC",
            "9n4nbM75f5Ui33ZbPYXn59EwSgE8CGsHtAeTH5YFeJ9E",
            8,
        ),
        _market(
            "USDC",
            "G18jKKXQwBbrHeiK3C9MRXhkHsLHf7XgCSisykV46EZa",
            "9zBoMsWEQTyBLGXDwTHUNnw4M47wfF2SnjA6sMJ5j7rT",
            "6Jp2xZUTWdDD2ZyUPRzeMdc6AFQ5K3pFgZxk2EijfjnM",
            "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
            6,
            tradable=False,
        ),
        _market(
            "USDT",
            "4vkNeXiYEUizLdrpdPS1eC2mccyM4NUPRtERrk6ZETkk",
            "Bv9A9PsZPJj8cYMVcCgxFQdyMBkZkEeNBLYFcNHT4qVV",
            "Fgc93D641F8N2d1xLjQ4jmShuD3GE3BsCXA56KBQbF5u",
            "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
            6,
            tradable=False,
        ),
    )
}


class MarketNotFoundError(KeyError):
    """Raised for a symbol that is not in the market registry."""


# =============================================================================
# LOOKUPS
# =============================================================================


def get_market(symbol: str) -> Market:
    market = MARKETS.get(symbol.strip().upper())
    if market is None:
        raise MarketNotFoundError(symbol)
    return market


def tradable_markets() -> list:
    return [m for m in MARKETS.values() if m.tradable]


def collateral_market_for(market: Market, side: Side) -> Market:
    """Longs post the market's own asset, shorts post USDC."""
    if side is Side.LONG:
        return market
    return MARKETS[STABLE_COLLATERAL]


# =============================================================================
# DERIVATION
# =============================================================================


def derive_position_address(
    owner: Pubkey,
    market: Market,
    collateral_market: Market,
    side: Side,
) -> Pubkey:
    """Position PDA. Pure: identical inputs always yield the same address."""
    seeds = [
        b"position",
        bytes(owner),
        bytes(JLP_POOL),
        bytes(market.custody),
        bytes(collateral_market.custody),
        bytes([side.value]),
    ]
    address, _ = Pubkey.find_program_address(seeds, PERPS_PROGRAM_ID)
    return address


def derive_request_address(
    position: Pubkey,
    counter: int,
    change: RequestChange = RequestChange.INCREASE,
) -> Pubkey:
    seeds = [
        b"position_request",
        bytes(position),
        counter.to_bytes(8, "little"),
        bytes([change.value]),
    ]
    address, _ = Pubkey.find_program_address(seeds, PERPS_PROGRAM_ID)
    return address


def derive_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, mint)


def derive_accounts(
    owner: Pubkey,
    market: Market,
    side: Side,
    counter: int,
    kind: RequestKind,
) -> DerivedAccountSet:
    """
    Derive the full account set for one request.

    For an open, the token account is the owner's funding ATA of the
    collateral mint. For a close, it is the receiving ATA of the same mint,
    so a close always settles in the asset the position was opened with.
    """
    collateral = collateral_market_for(market, side)
    position = derive_position_address(owner, market, collateral, side)
    request = derive_request_address(position, counter, kind.change)

    return DerivedAccountSet(
        owner=owner,
        token_account=derive_associated_token_address(owner, collateral.mint),
        perpetuals=PERPETUALS_PDA,
        pool=JLP_POOL,
        position=position,
        position_request=request,
        position_request_ata=derive_associated_token_address(request, collateral.mint),
        custody=market.custody,
        collateral_custody=collateral.custody,
        mint=collateral.mint,
        referral=REFERRAL_PLACEHOLDER,
        token_program=TOKEN_PROGRAM_ID,
        associated_token_program=ASSOCIATED_TOKEN_PROGRAM_ID,
        system_program=SYSTEM_PROGRAM_ID,
        event_authority=EVENT_AUTHORITY_PDA,
        program=PERPS_PROGRAM_ID,
    )


# =============================================================================
# REQUEST COUNTERS
# =============================================================================


class CounterStore(Protocol):
    def load_counters(self) -> Dict[str, int]: ...

    def save_counter(self, owner: str, next_value: int) -> None: ...

    def reserve_counter(self, owner: str, floor: int = 0) -> int: ...


class CounterSequence:
    """
    Per-owner monotonic request counter, keyed by the owner's address.

    ``next()`` hands out each value exactly once per owner, so two requests
    from the same owner can never derive the same request address. With a
    store attached the next value survives restarts; ``observe()`` lets the
    tracker push the sequence past counters found in persisted requests.
    With a store, each value is reserved in the store itself so separate
    processes sharing one database never issue the same counter.
    """

    def __init__(self, store: Optional[CounterStore] = None):
        self._store = store
        self._lock = threading.Lock()
        self._next: Dict[str, int] = {}
        if store is not None:
            self._next.update(store.load_counters())

    def next(self, owner: Pubkey) -> int:
        key = str(owner)
        with self._lock:
            value = self._next.get(key, 0)
            if self._store is not None:
                # Another process may have used counters since we last looked
                value = self._store.reserve_counter(key, value)
            self._next[key] = value + 1
        Logger.debug(f"[CODEC] Counter {value} issued for {key[:8]}")
        return value

    def peek(self, owner: Pubkey) -> int:
        return self._next.get(str(owner), 0)

    def observe(self, owner: Pubkey, counter: int) -> None:
        """Ensure future counters for this owner are above ``counter``."""
        key = str(owner)
        with self._lock:
            if self._next.get(key, 0) <= counter:
                self._next[key] = counter + 1
                if self._store is not None:
                    self._store.save_counter(key, counter + 1)
