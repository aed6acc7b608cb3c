"""
Perps Type Definitions
======================
Dataclasses shared by the request-encoding and lifecycle-tracking components.

These types form the "language" of the tracker:
- Market: Static per-asset account registry entry
- TradeIntent: Validated user request to open a position
- DerivedAccountSet: Every address an encoded instruction references
- PendingRequest: A submitted request awaiting keeper fulfillment
- MonitoredPosition: A confirmed position under TP/SL watch
- PriceAlert: One-shot price threshold notification
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from src.shared.execution.execution_result import RequestStatus


class Side(Enum):
    """Position side as the perpetuals program encodes it (0 is its 'None')."""

    LONG = 1
    SHORT = 2

    @classmethod
    def parse(cls, value: str) -> "Side":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown side: {value!r}") from None


class RequestChange(Enum):
    """Trailing seed byte of a position-request address."""

    INCREASE = 1
    DECREASE = 2


class RequestKind(Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"

    @property
    def change(self) -> RequestChange:
        return RequestChange.INCREASE if self is RequestKind.OPEN else RequestChange.DECREASE


class AlertDirection(Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


class CloseReason(Enum):
    """Why a close request was issued."""

    TAKE_PROFIT = "take-profit"
    STOP_LOSS = "stop-loss"
    USER = "user"


@dataclass(frozen=True, slots=True)
class Market:
    """
    Static registry entry for one tradable or collateral asset.

    Attributes:
        symbol: Upper-case ticker (SOL, ETH, BTC, USDC, USDT)
        custody: Program custody account for the asset
        custody_token_account: Token account the custody holds funds in
        oracle: Price oracle account (informational, not referenced by requests)
        mint: SPL token mint
        decimals: Token decimals
        tradable: False for stable collateral-only assets
    """

    symbol: str
    custody: Pubkey
    custody_token_account: Pubkey
    oracle: Pubkey
    mint: Pubkey
    decimals: int
    tradable: bool = True


@dataclass(frozen=True, slots=True)
class TradeIntent:
    """
    A validated request to open a leveraged position.

    Attributes:
        market: Market symbol
        side: LONG or SHORT
        collateral_amount: Collateral in smallest token units of the
            side's collateral asset (market asset for longs, USDC for shorts)
        leverage: Position size as a multiple of collateral value
        max_slippage: Accepted price deviation, USD with 6 decimals
        take_profit_pct: Optional TP threshold armed on confirmation
        stop_loss_pct: Optional SL threshold armed on confirmation
        jupiter_minimum_out: Optional swap floor forwarded to the program
    """

    market: str
    side: Side
    collateral_amount: int
    leverage: Decimal
    max_slippage: int
    take_profit_pct: Optional[Decimal] = None
    stop_loss_pct: Optional[Decimal] = None
    jupiter_minimum_out: Optional[int] = None


@dataclass(frozen=True, slots=True)
class CloseParams:
    """Parameters of a decrease request. entire_position closes everything."""

    max_slippage: int
    entire_position: bool = True
    collateral_usd_delta: int = 0
    size_usd_delta: int = 0
    jupiter_minimum_out: Optional[int] = None


@dataclass(frozen=True, slots=True)
class DerivedAccountSet:
    """Every address an encoded request references, recomputed per encode."""

    owner: Pubkey
    token_account: Pubkey  # Funding (open) or receiving (close) ATA
    perpetuals: Pubkey
    pool: Pubkey
    position: Pubkey
    position_request: Pubkey
    position_request_ata: Pubkey
    custody: Pubkey
    collateral_custody: Pubkey
    mint: Pubkey  # Input (open) or desired (close) mint
    referral: Pubkey
    token_program: Pubkey
    associated_token_program: Pubkey
    system_program: Pubkey
    event_authority: Pubkey
    program: Pubkey


@dataclass(frozen=True)
class EncodedInstruction:
    """Instruction data plus ordered account metas for one request."""

    kind: RequestKind
    program_id: Pubkey
    data: bytes
    accounts: Tuple[AccountMeta, ...]
    derived: DerivedAccountSet
    counter: int

    def to_instruction(self) -> Instruction:
        return Instruction(self.program_id, self.data, list(self.accounts))


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class PendingRequest:
    """
    A request submitted to the chain, tracked until a terminal status.

    Confirmation is inferred from the position account changing after
    submission: ``baseline_fingerprint`` holds a digest of its bytes at
    submit time (None when the account did not exist yet).
    """

    owner_id: str
    owner: str
    market: str
    side: Side
    kind: RequestKind
    counter: int
    position_address: str
    request_address: str
    signature: Optional[str] = None
    status: RequestStatus = RequestStatus.SUBMITTED
    polls: int = 0
    baseline_fingerprint: Optional[str] = None
    collateral_amount: int = 0
    size_usd: int = 0
    price: Optional[Decimal] = None  # Market price at build time
    take_profit_pct: Optional[Decimal] = None
    stop_loss_pct: Optional[Decimal] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    request_id: str = field(default_factory=_new_id)
    submitted_at: float = field(default_factory=time.time)
    resolved_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class MonitoredPosition:
    """
    A confirmed position under take-profit / stop-loss watch.

    Attributes:
        entry_price: Market price observed when the open was confirmed
        size_usd: Position size, USD with 6 decimals
        take_profit_pct: Close when price-move P&L% reaches this
        stop_loss_pct: Close when price-move P&L% falls to minus this
    """

    owner_id: str
    owner: str
    market: str
    side: Side
    entry_price: Decimal
    size_usd: int
    position_address: str
    take_profit_pct: Optional[Decimal] = None
    stop_loss_pct: Optional[Decimal] = None
    opened_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str, Side]:
        return (self.owner_id, self.market, self.side)

    def pnl_pct(self, price: Decimal) -> Decimal:
        """Price-move P&L percentage, positive when the move favors the side."""
        if self.entry_price <= 0:
            return Decimal(0)
        move = (price - self.entry_price) / self.entry_price * Decimal(100)
        return move if self.side is Side.LONG else -move


@dataclass
class PriceAlert:
    owner_id: str
    symbol: str
    target_price: Decimal
    direction: AlertDirection
    alert_id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=time.time)

    def is_triggered(self, price: Decimal) -> bool:
        if self.direction is AlertDirection.ABOVE:
            return price >= self.target_price
        return price <= self.target_price


class EncodingError(ValueError):
    """Raised when request parameters cannot be encoded."""
