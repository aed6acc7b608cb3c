"""
Transaction Builder
===================
Turns a TradeIntent (open) or a MonitoredPosition (close) into a compiled,
unsigned v0 message ready for the failover client to sign and send.

Pipeline per build:
1. Validate the intent against the market registry
2. Read the market price and derive size / price-slippage parameters
3. Fetch a fresh blockhash (bounded attempts, via the failover client)
4. Take the next request counter for the owner
5. Encode the request and prepend the compute-budget instructions

Compute budget always comes first:
    [SetComputeUnitLimit, SetComputeUnitPrice, <perps request>]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional, Tuple

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey

from config.settings import Settings
from src.perps.address_registry import (
    CounterSequence,
    MarketNotFoundError,
    collateral_market_for,
    get_market,
)
from src.perps.instruction_codec import (
    CloseRequestParams,
    OpenRequestParams,
    encode_close_request,
    encode_open_request,
)
from src.perps.types import (
    CloseParams,
    EncodedInstruction,
    EncodingError,
    MonitoredPosition,
    Side,
    TradeIntent,
)
from src.shared.execution.execution_result import ErrorCode
from src.shared.feeds.price_source import PriceFeed
from src.shared.infrastructure.rpc_manager import EndpointFailoverClient
from src.shared.system.logging import Logger


USD_DECIMALS = 6
USD_SCALE = Decimal(10) ** USD_DECIMALS


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BuilderConfig:
    """Compute budget and blockhash settings."""

    compute_unit_limit: int = Settings.COMPUTE_UNIT_LIMIT
    priority_fee_micro_lamports: int = Settings.PRIORITY_FEE_MICRO_LAMPORTS
    blockhash_max_attempts: int = Settings.BLOCKHASH_MAX_ATTEMPTS


@dataclass
class BuildResult:
    """Compiled message plus everything the tracker needs to record it."""

    message: Optional[MessageV0] = None
    encoded: Optional[EncodedInstruction] = None
    instructions: List[Instruction] = field(default_factory=list)
    counter: Optional[int] = None
    price: Optional[Decimal] = None
    size_usd: int = 0
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_code is None and self.message is not None


def _fail(code: ErrorCode, message: str) -> BuildResult:
    Logger.warning(f"[BUILDER] {code.value}: {message}")
    return BuildResult(error_code=code, error_message=message)


def to_usd_units(amount: Decimal) -> int:
    """USD amount to the program's 6-decimal integer representation."""
    return int((amount * USD_SCALE).to_integral_value(rounding=ROUND_DOWN))


def slippage_price(price: Decimal, side: Side, max_slippage: int, opening: bool) -> int:
    """
    Worst acceptable execution price, 6-decimal USD.

    Buying exposure (long open, short close) tolerates a higher price,
    selling exposure (short open, long close) a lower one.
    """
    base = to_usd_units(price)
    buying = (side is Side.LONG) == opening
    if buying:
        return base + max_slippage
    return max(base - max_slippage, 0)


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSACTION BUILDER
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionBuilder:
    """
    Assembles perps request transactions.

    Usage:
        builder = TransactionBuilder(client, price_feed, counters)
        result = await builder.build_open(owner, intent)
        if result.success:
            outcome = await client.submit(result.message, keypair)
    """

    def __init__(
        self,
        client: EndpointFailoverClient,
        price_feed: PriceFeed,
        counters: Optional[CounterSequence] = None,
        config: Optional[BuilderConfig] = None,
    ):
        self.client = client
        self.price_feed = price_feed
        self.counters = counters or CounterSequence()
        self.config = config or BuilderConfig()

    def build_compute_budget_instructions(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.config.compute_unit_limit),
            set_compute_unit_price(self.config.priority_fee_micro_lamports),
        ]

    # ═══════════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def validate_intent(intent: TradeIntent) -> Optional[str]:
        """Return a human-readable problem with the intent, or None."""
        try:
            market = get_market(intent.market)
        except MarketNotFoundError:
            return f"Unknown market {intent.market!r}"
        if not market.tradable:
            return f"{market.symbol} is collateral only and cannot be traded"
        if not isinstance(intent.side, Side):
            return f"Side must be LONG or SHORT, got {intent.side!r}"
        if not isinstance(intent.collateral_amount, int) or intent.collateral_amount <= 0:
            return "Collateral amount must be a positive integer"
        if intent.leverage is None or Decimal(intent.leverage) <= 0:
            return "Leverage must be positive"
        if not isinstance(intent.max_slippage, int) or intent.max_slippage < 0:
            return "Max slippage must be a non-negative integer"
        return None

    # ═══════════════════════════════════════════════════════════════════
    # BUILDS
    # ═══════════════════════════════════════════════════════════════════

    async def build_open(self, owner: Pubkey, intent: TradeIntent) -> BuildResult:
        problem = self.validate_intent(intent)
        if problem:
            return _fail(ErrorCode.INVALID_INTENT, problem)

        market = get_market(intent.market)
        collateral = collateral_market_for(market, intent.side)

        prices = await self.price_feed.get_prices({market.symbol, collateral.symbol})
        price = prices.get(market.symbol)
        collateral_price = prices.get(collateral.symbol)
        if price is None or collateral_price is None:
            return _fail(ErrorCode.PRICE_UNAVAILABLE, f"No price for {market.symbol}")

        collateral_usd = Decimal(intent.collateral_amount).scaleb(-collateral.decimals) * collateral_price
        size_usd = to_usd_units(collateral_usd * Decimal(intent.leverage))
        if size_usd <= 0:
            return _fail(ErrorCode.INVALID_INTENT, "Position size rounds to zero")

        blockhash, error = await self._fresh_blockhash()
        if error is not None:
            return error

        counter = self.counters.next(owner)
        params = OpenRequestParams(
            owner=owner,
            market=market.symbol,
            side=intent.side,
            size_usd_delta=size_usd,
            collateral_token_delta=intent.collateral_amount,
            price_slippage=slippage_price(price, intent.side, intent.max_slippage, opening=True),
            counter=counter,
            jupiter_minimum_out=intent.jupiter_minimum_out,
        )
        try:
            encoded = encode_open_request(params)
        except EncodingError as e:
            return _fail(ErrorCode.INVALID_INTENT, str(e))

        result = self._compile(owner, encoded, blockhash)
        result.price = price
        result.size_usd = size_usd
        Logger.info(
            f"[BUILDER] Open {market.symbol} {intent.side.name} size=${size_usd / 10**USD_DECIMALS:,.2f} "
            f"@ {price} counter={counter}"
        )
        return result

    async def build_close(
        self,
        owner: Pubkey,
        position: MonitoredPosition,
        close_params: Optional[CloseParams] = None,
    ) -> BuildResult:
        """Close (or reduce) a position; market and side come from the position."""
        close_params = close_params or CloseParams(max_slippage=Settings.DEFAULT_MAX_SLIPPAGE)
        try:
            market = get_market(position.market)
        except MarketNotFoundError:
            return _fail(ErrorCode.INVALID_INTENT, f"Unknown market {position.market!r}")

        price = await self.price_feed.get_price(market.symbol)
        if price is None:
            return _fail(ErrorCode.PRICE_UNAVAILABLE, f"No price for {market.symbol}")

        blockhash, error = await self._fresh_blockhash()
        if error is not None:
            return error

        counter = self.counters.next(owner)
        params = CloseRequestParams.from_close(
            owner=owner,
            market=market.symbol,
            side=position.side,
            close=close_params,
            price_slippage=slippage_price(price, position.side, close_params.max_slippage, opening=False),
            counter=counter,
        )
        try:
            encoded = encode_close_request(params)
        except EncodingError as e:
            return _fail(ErrorCode.INVALID_INTENT, str(e))

        result = self._compile(owner, encoded, blockhash)
        result.price = price
        result.size_usd = position.size_usd
        Logger.info(f"[BUILDER] Close {market.symbol} {position.side.name} @ {price} counter={counter}")
        return result

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    async def _fresh_blockhash(self) -> Tuple[Optional[object], Optional[BuildResult]]:
        outcome = await self.client.get_latest_blockhash(self.config.blockhash_max_attempts)
        if not outcome.ok:
            return None, _fail(
                outcome.error_code or ErrorCode.ENDPOINT_EXHAUSTED,
                f"Could not fetch a recent blockhash: {outcome.error_message}",
            )
        return outcome.value, None

    def _compile(self, owner: Pubkey, encoded: EncodedInstruction, blockhash) -> BuildResult:
        instructions = self.build_compute_budget_instructions() + [encoded.to_instruction()]
        message = MessageV0.try_compile(
            payer=owner,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        Logger.debug(f"[BUILDER] Message compiled: {len(instructions)} ixs")
        return BuildResult(
            message=message,
            encoded=encoded,
            instructions=instructions,
            counter=encoded.counter,
        )
