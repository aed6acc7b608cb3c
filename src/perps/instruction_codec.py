"""
Perps Instruction Codec
=======================
Borsh encoding of the two market-request instructions of the perpetuals
program:

    create_increase_position_market_request   (open / add)
    create_decrease_position_market_request   (close / reduce)

Both are Anchor instructions: an 8-byte discriminator
(sha256("global:<name>")[:8]) followed by the little-endian argument
struct. The discriminators are fixed by the deployed program and kept
here as constants.

Each instruction kind has exactly one InstructionLayout holding its
discriminator, its argument fields and its account order. Encoding,
validation and tests all go through that table.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from solders.instruction import AccountMeta

from src.perps.address_registry import derive_accounts, get_market
from src.perps.types import (
    CloseParams,
    DerivedAccountSet,
    EncodedInstruction,
    EncodingError,
    RequestKind,
    Side,
)
from src.shared.system.logging import Logger


# =============================================================================
# CONSTANTS
# =============================================================================

INCREASE_DISCRIMINATOR = bytes([184, 85, 199, 24, 105, 171, 156, 56])
DECREASE_DISCRIMINATOR = bytes([74, 198, 195, 86, 193, 99, 1, 79])

U64_MAX = 2**64 - 1

# Field types
U8 = "u8"
U64 = "u64"
OPTION_U64 = "option<u64>"
OPTION_BOOL = "option<bool>"

# Account flags
W = "writable"
S = "signer"
R = "readonly"


@dataclass(frozen=True)
class InstructionLayout:
    """Discriminator, argument fields and account order for one instruction."""

    name: str
    discriminator: bytes
    fields: Tuple[Tuple[str, str], ...]
    accounts: Tuple[Tuple[str, Tuple[str, ...]], ...]


OPEN_LAYOUT = InstructionLayout(
    name="create_increase_position_market_request",
    discriminator=INCREASE_DISCRIMINATOR,
    fields=(
        ("size_usd_delta", U64),
        ("collateral_token_delta", U64),
        ("side", U8),
        ("price_slippage", U64),
        ("jupiter_minimum_out", OPTION_U64),
        ("counter", U64),
    ),
    accounts=(
        ("owner", (S, W)),
        ("token_account", (W,)),  # fundingAccount
        ("perpetuals", (R,)),
        ("pool", (R,)),
        ("position", (W,)),
        ("position_request", (W,)),
        ("position_request_ata", (W,)),
        ("custody", (R,)),
        ("collateral_custody", (R,)),
        ("mint", (R,)),  # inputMint
        ("referral", (R,)),
        ("token_program", (R,)),
        ("associated_token_program", (R,)),
        ("system_program", (R,)),
        ("event_authority", (R,)),
        ("program", (R,)),
    ),
)

CLOSE_LAYOUT = InstructionLayout(
    name="create_decrease_position_market_request",
    discriminator=DECREASE_DISCRIMINATOR,
    fields=(
        ("collateral_usd_delta", U64),
        ("size_usd_delta", U64),
        ("price_slippage", U64),
        ("jupiter_minimum_out", OPTION_U64),
        ("entire_position", OPTION_BOOL),
        ("counter", U64),
    ),
    accounts=(
        ("owner", (S, W)),
        ("token_account", (W,)),  # receivingAccount
        ("perpetuals", (R,)),
        ("pool", (R,)),
        ("position", (R,)),
        ("position_request", (W,)),
        ("position_request_ata", (W,)),
        ("custody", (R,)),
        ("collateral_custody", (R,)),
        ("mint", (R,)),  # desiredMint
        ("referral", (R,)),
        ("token_program", (R,)),
        ("associated_token_program", (R,)),
        ("system_program", (R,)),
        ("event_authority", (R,)),
        ("program", (R,)),
    ),
)

LAYOUTS = {
    RequestKind.OPEN: OPEN_LAYOUT,
    RequestKind.CLOSE: CLOSE_LAYOUT,
}


# =============================================================================
# PARAMS
# =============================================================================


@dataclass(frozen=True, slots=True)
class OpenRequestParams:
    """Fully resolved arguments of an increase request."""

    owner: Any  # Pubkey
    market: str
    side: Side
    size_usd_delta: int
    collateral_token_delta: int
    price_slippage: int
    counter: int
    jupiter_minimum_out: Optional[int] = None


@dataclass(frozen=True, slots=True)
class CloseRequestParams:
    """Fully resolved arguments of a decrease request."""

    owner: Any  # Pubkey
    market: str
    side: Side
    price_slippage: int
    counter: int
    entire_position: Optional[bool] = True
    collateral_usd_delta: int = 0
    size_usd_delta: int = 0
    jupiter_minimum_out: Optional[int] = None

    @classmethod
    def from_close(cls, owner, market: str, side: Side, close: CloseParams, price_slippage: int, counter: int):
        return cls(
            owner=owner,
            market=market,
            side=side,
            price_slippage=price_slippage,
            counter=counter,
            entire_position=True if close.entire_position else None,
            collateral_usd_delta=close.collateral_usd_delta,
            size_usd_delta=close.size_usd_delta,
            jupiter_minimum_out=close.jupiter_minimum_out,
        )


# =============================================================================
# SERIALIZATION
# =============================================================================


def _check_uint(name: str, value: Any, bits: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{name} must be an integer, got {value!r}")
    if value < 0 or value >= 2**bits:
        raise EncodingError(f"{name}={value} out of range for u{bits}")
    return value


def _encode_field(name: str, kind: str, value: Any) -> bytes:
    if kind == U64:
        return _check_uint(name, value, 64).to_bytes(8, "little")
    if kind == U8:
        return _check_uint(name, value, 8).to_bytes(1, "little")
    if kind == OPTION_U64:
        if value is None:
            return b"\x00"
        return b"\x01" + _check_uint(name, value, 64).to_bytes(8, "little")
    if kind == OPTION_BOOL:
        if value is None:
            return b"\x00"
        if not isinstance(value, bool):
            raise EncodingError(f"{name} must be a bool, got {value!r}")
        return b"\x01" + (b"\x01" if value else b"\x00")
    raise EncodingError(f"Unsupported field type {kind} for {name}")


def encode_data(layout: InstructionLayout, values: Dict[str, Any]) -> bytes:
    """Serialize ``values`` in layout order behind the discriminator."""
    data = bytearray(layout.discriminator)
    for name, kind in layout.fields:
        if name not in values:
            raise EncodingError(f"{layout.name}: missing field {name}")
        data.extend(_encode_field(name, kind, values[name]))
    return bytes(data)


def build_account_metas(layout: InstructionLayout, derived: DerivedAccountSet) -> Tuple[AccountMeta, ...]:
    metas = []
    for name, flags in layout.accounts:
        pubkey = getattr(derived, name, None)
        if pubkey is None:
            raise EncodingError(f"{layout.name}: account {name} not derived")
        metas.append(AccountMeta(pubkey=pubkey, is_signer=S in flags, is_writable=W in flags))
    return tuple(metas)


def _check_side(side: Any) -> Side:
    if not isinstance(side, Side):
        raise EncodingError(f"side must be LONG or SHORT, got {side!r}")
    return side


# =============================================================================
# PUBLIC API
# =============================================================================


def encode_open_request(params: OpenRequestParams) -> EncodedInstruction:
    """Encode a create_increase_position_market_request instruction."""
    side = _check_side(params.side)
    market = get_market(params.market)
    if not market.tradable:
        raise EncodingError(f"{market.symbol} is collateral only")
    _check_uint("counter", params.counter, 64)
    derived = derive_accounts(params.owner, market, side, params.counter, RequestKind.OPEN)

    data = encode_data(
        OPEN_LAYOUT,
        {
            "size_usd_delta": params.size_usd_delta,
            "collateral_token_delta": params.collateral_token_delta,
            "side": side.value,
            "price_slippage": params.price_slippage,
            "jupiter_minimum_out": params.jupiter_minimum_out,
            "counter": params.counter,
        },
    )
    Logger.debug(
        f"[CODEC] Encoded open {market.symbol} {side.name} counter={params.counter} ({len(data)} bytes)"
    )
    return EncodedInstruction(
        kind=RequestKind.OPEN,
        program_id=derived.program,
        data=data,
        accounts=build_account_metas(OPEN_LAYOUT, derived),
        derived=derived,
        counter=params.counter,
    )


def encode_close_request(params: CloseRequestParams) -> EncodedInstruction:
    """Encode a create_decrease_position_market_request instruction."""
    side = _check_side(params.side)
    market = get_market(params.market)
    if not market.tradable:
        raise EncodingError(f"{market.symbol} is collateral only")
    _check_uint("counter", params.counter, 64)
    derived = derive_accounts(params.owner, market, side, params.counter, RequestKind.CLOSE)

    data = encode_data(
        CLOSE_LAYOUT,
        {
            "collateral_usd_delta": params.collateral_usd_delta,
            "size_usd_delta": params.size_usd_delta,
            "price_slippage": params.price_slippage,
            "jupiter_minimum_out": params.jupiter_minimum_out,
            "entire_position": params.entire_position,
            "counter": params.counter,
        },
    )
    Logger.debug(
        f"[CODEC] Encoded close {market.symbol} {side.name} counter={params.counter} ({len(data)} bytes)"
    )
    return EncodedInstruction(
        kind=RequestKind.CLOSE,
        program_id=derived.program,
        data=data,
        accounts=build_account_metas(CLOSE_LAYOUT, derived),
        derived=derived,
        counter=params.counter,
    )


# =============================================================================
# ACCOUNT DECODING
# =============================================================================

# Position account: discriminator, owner, pool, custody, collateral_custody,
# open_time, update_time, side, price, then size_usd
POSITION_SIZE_OFFSET = 8 + 32 * 4 + 8 + 8 + 1 + 8


def decode_position_size(data: bytes) -> Optional[int]:
    """size_usd (6 decimals) of a Position account, or None if ``data`` is too short to be one."""
    if len(data) < POSITION_SIZE_OFFSET + 8:
        return None
    return int.from_bytes(data[POSITION_SIZE_OFFSET:POSITION_SIZE_OFFSET + 8], "little")
