"""
Execution Pipeline
==================
Transaction assembly for perps requests.

Components:
- TransactionBuilder: Intent -> compiled v0 message
"""

from src.execution.transaction_builder import (
    BuilderConfig,
    BuildResult,
    TransactionBuilder,
    slippage_price,
    to_usd_units,
)


__all__ = [
    "BuilderConfig",
    "BuildResult",
    "TransactionBuilder",
    "slippage_price",
    "to_usd_units",
]
