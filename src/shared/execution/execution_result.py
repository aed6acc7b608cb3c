"""
Unified Trade Result
====================
Standardized return type for every user-facing trade path.

PerpsTrader.open_position(), PerpsTrader.close_position() and the
tracker-driven closes all return a TradeResult, so callers branch on
``result.success`` and ``result.error_code`` instead of catching exceptions.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum
import time


class RequestStatus(Enum):
    """Lifecycle status of a submitted position request."""

    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.SUBMITTED


class ErrorCode(Enum):
    """Standardized error codes for trade failures."""

    # Caller errors
    INVALID_INTENT = "INVALID_INTENT"  # Unknown market, bad side, zero amount
    MISSING_PREREQUISITE = "MISSING_PREREQUISITE"  # Funding token account absent
    SIGNER_UNAVAILABLE = "SIGNER_UNAVAILABLE"

    # Network errors
    ENDPOINT_EXHAUSTED = "ENDPOINT_EXHAUSTED"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"

    # Chain errors
    REJECTED_ON_CHAIN = "REJECTED_ON_CHAIN"  # Preflight / simulation rejection
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"


@dataclass
class TradeResult:
    """
    Result of a single open or close request.

    Usage:
        result = await trader.open_position(owner_id, intent)
        if result.success:
            log(f"Submitted {result.signature}")
        else:
            reply(result.error_message)
    """

    success: bool
    status: Optional[RequestStatus] = None

    # Transaction details
    signature: Optional[str] = None
    request_id: Optional[str] = None
    counter: Optional[int] = None

    # Error handling
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    # Context
    market: Optional[str] = None
    endpoint: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/storage."""
        return {
            "success": self.success,
            "status": self.status.value if self.status else None,
            "signature": self.signature,
            "request_id": self.request_id,
            "counter": self.counter,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": self.error_message,
            "market": self.market,
            "endpoint": self.endpoint,
        }

    def __repr__(self) -> str:
        if self.success:
            sig = self.signature[:12] if self.signature else "N/A"
            return f"TradeResult(OK: {self.market} status={self.status.value}, tx={sig}...)"
        code = self.error_code.value if self.error_code else None
        return f"TradeResult(ERR: {code}, {self.error_message})"


# ═══════════════════════════════════════════════════════════════════════════════
# FACTORY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def success_result(signature: str, market: str, **kwargs) -> TradeResult:
    """Create a successful (submitted) trade result."""
    return TradeResult(
        success=True,
        status=kwargs.get("status", RequestStatus.SUBMITTED),
        signature=signature,
        market=market,
        request_id=kwargs.get("request_id"),
        counter=kwargs.get("counter"),
        endpoint=kwargs.get("endpoint"),
    )


def failure_result(
    error_code: ErrorCode,
    error_message: str,
    market: str = None,
    **kwargs
) -> TradeResult:
    """Create a failed trade result."""
    return TradeResult(
        success=False,
        status=kwargs.get("status"),
        error_code=error_code,
        error_message=error_message,
        market=market,
        request_id=kwargs.get("request_id"),
        endpoint=kwargs.get("endpoint"),
    )
