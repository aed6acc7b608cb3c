"""
Perps Request Tracker
=====================
Request encoding and lifecycle tracking for the Jupiter Perpetuals
two-phase protocol: the user submits a position request, an external
keeper fulfills it.

Exports independent components:
- AddressRegistry: Market registry and PDA derivation
- InstructionCodec: Borsh encoding of increase / decrease requests
- PositionLifecycleTracker: Request state machine and TP/SL/alert loop
- PerpsTrader: Open / close pipeline for the command interface
"""

from src.perps.types import (
    AlertDirection,
    CloseParams,
    CloseReason,
    DerivedAccountSet,
    EncodedInstruction,
    EncodingError,
    Market,
    MonitoredPosition,
    PendingRequest,
    PriceAlert,
    RequestChange,
    RequestKind,
    Side,
    TradeIntent,
)
from src.perps.address_registry import (
    MARKETS,
    PERPS_PROGRAM_ID,
    CounterSequence,
    MarketNotFoundError,
    collateral_market_for,
    derive_accounts,
    derive_position_address,
    derive_request_address,
    get_market,
)
from src.perps.instruction_codec import (
    CloseRequestParams,
    OpenRequestParams,
    encode_close_request,
    encode_open_request,
)

__all__ = [
    # Types
    "AlertDirection",
    "CloseParams",
    "CloseReason",
    "DerivedAccountSet",
    "EncodedInstruction",
    "EncodingError",
    "Market",
    "MonitoredPosition",
    "PendingRequest",
    "PriceAlert",
    "RequestChange",
    "RequestKind",
    "Side",
    "TradeIntent",
    # Registry
    "MARKETS",
    "PERPS_PROGRAM_ID",
    "CounterSequence",
    "MarketNotFoundError",
    "collateral_market_for",
    "derive_accounts",
    "derive_position_address",
    "derive_request_address",
    "get_market",
    # Codec
    "CloseRequestParams",
    "OpenRequestParams",
    "encode_close_request",
    "encode_open_request",
]


# Lazy imports for modules that pull in the network stack
def get_tracker():
    """Lazy import for PositionLifecycleTracker."""
    from src.perps.lifecycle_tracker import PositionLifecycleTracker
    return PositionLifecycleTracker


def get_trader():
    """Lazy import for PerpsTrader."""
    from src.perps.trader import PerpsTrader
    return PerpsTrader
