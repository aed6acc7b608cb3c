"""
Perps Trader
============
Entry point for the command interface: open and close positions and get
back a TradeResult.

Flow per request:
    key store -> TransactionBuilder -> prerequisite check -> baseline read
              -> EndpointFailoverClient.submit -> tracker.record_submission

Nothing raises to the caller for expected failures; every outcome is a
TradeResult carrying either the signature or an ErrorCode with a message
the user can act on.
"""

from decimal import Decimal
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from src.execution.transaction_builder import BuildResult, TransactionBuilder
from src.perps.address_registry import (
    CounterSequence,
    MarketNotFoundError,
    collateral_market_for,
    derive_position_address,
    get_market,
)
from src.perps.lifecycle_tracker import PositionLifecycleTracker
from src.perps.types import (
    CloseParams,
    CloseReason,
    MonitoredPosition,
    PendingRequest,
    RequestKind,
    Side,
    TradeIntent,
)
from src.shared.execution.execution_result import (
    ErrorCode,
    TradeResult,
    failure_result,
    success_result,
)
from src.shared.feeds.price_source import PriceFeed
from src.shared.infrastructure.rpc_manager import EndpointFailoverClient
from src.shared.infrastructure.signer import KeyStore
from src.shared.notification.telegram_manager import LogNotifier, NotificationSink
from src.shared.system.logging import Logger
from src.shared.system.persistence import PersistenceDB


class PerpsTrader:
    """
    Wires the builder, failover client and lifecycle tracker together.

    Usage:
        trader = PerpsTrader(client, feed, EnvKeyStore(), db=get_db())
        result = await trader.open_position("12345", intent)
    """

    def __init__(
        self,
        client: EndpointFailoverClient,
        price_feed: PriceFeed,
        key_store: KeyStore,
        notifier: Optional[NotificationSink] = None,
        db: Optional[PersistenceDB] = None,
        tracker: Optional[PositionLifecycleTracker] = None,
        builder: Optional[TransactionBuilder] = None,
        counters: Optional[CounterSequence] = None,
    ):
        self.client = client
        self.price_feed = price_feed
        self.key_store = key_store
        self.counters = counters or CounterSequence(store=db)
        self.builder = builder or TransactionBuilder(client, price_feed, self.counters)
        self.tracker = tracker or PositionLifecycleTracker(
            client,
            price_feed,
            notifier or LogNotifier(),
            db=db,
            counters=self.counters,
        )
        self.tracker.close_handler = self.close_for_trigger

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════

    async def open_position(self, owner_id: str, intent: TradeIntent) -> TradeResult:
        signer = self.key_store.get_signer(owner_id)
        if signer is None:
            return failure_result(ErrorCode.SIGNER_UNAVAILABLE, "No wallet found for this account", intent.market)

        build = await self.builder.build_open(signer.pubkey(), intent)
        if not build.success:
            return failure_result(build.error_code, build.error_message, intent.market)

        request = self._pending_from_build(owner_id, signer.pubkey(), build, intent.market, intent.side)
        request.collateral_amount = intent.collateral_amount
        request.take_profit_pct = intent.take_profit_pct
        request.stop_loss_pct = intent.stop_loss_pct
        return await self._submit(signer, build, request)

    async def close_position(
        self,
        owner_id: str,
        market: str,
        side: Side,
        close_params: Optional[CloseParams] = None,
    ) -> TradeResult:
        """User-initiated close of the owner's position in ``market`` / ``side``."""
        signer = self.key_store.get_signer(owner_id)
        if signer is None:
            return failure_result(ErrorCode.SIGNER_UNAVAILABLE, "No wallet found for this account", market)
        try:
            symbol = get_market(market).symbol
        except MarketNotFoundError:
            return failure_result(ErrorCode.INVALID_INTENT, f"Unknown market {market!r}", market)

        if self.tracker.is_closing(owner_id, symbol, side):
            return failure_result(
                ErrorCode.INVALID_INTENT,
                f"A close request for {symbol} {side.name} is already pending",
                symbol,
            )

        position = self.tracker.take_position(owner_id, symbol, side)
        try:
            taken = position is not None
            if position is None:
                position = self._unmonitored_position(owner_id, signer.pubkey(), symbol, side)

            result = await self._close(signer, position, close_params, CloseReason.USER)
            if not result.success and taken and not self.tracker.has_pending_close(owner_id, symbol, side):
                self.tracker.rearm(position)
            return result
        finally:
            self.tracker.release_close(owner_id, symbol, side)

    async def close_for_trigger(self, position: MonitoredPosition, reason: CloseReason) -> TradeResult:
        """Close handler used by the tracker for take-profit / stop-loss exits."""
        signer = self.key_store.get_signer(position.owner_id)
        if signer is None:
            return failure_result(ErrorCode.SIGNER_UNAVAILABLE, "No wallet found for this account", position.market)
        return await self._close(signer, position, None, reason)

    # ═══════════════════════════════════════════════════════════════════
    # PIPELINE
    # ═══════════════════════════════════════════════════════════════════

    async def _close(
        self,
        signer: Keypair,
        position: MonitoredPosition,
        close_params: Optional[CloseParams],
        reason: CloseReason,
    ) -> TradeResult:
        build = await self.builder.build_close(signer.pubkey(), position, close_params)
        if not build.success:
            return failure_result(build.error_code, build.error_message, position.market)

        request = self._pending_from_build(position.owner_id, signer.pubkey(), build, position.market, position.side)
        request.size_usd = position.size_usd
        request.reason = reason.value
        return await self._submit(signer, build, request)

    async def _submit(self, signer: Keypair, build: BuildResult, request: PendingRequest) -> TradeResult:
        derived = build.encoded.derived

        exists = await self.client.check_account_exists(derived.token_account)
        if not exists.ok:
            return failure_result(exists.error_code, exists.error_message, request.market)
        if not exists.value:
            return failure_result(
                ErrorCode.MISSING_PREREQUISITE,
                self._missing_account_message(request, derived.token_account),
                request.market,
            )

        baseline = await self.client.read_account(derived.position)
        if not baseline.ok:
            return failure_result(baseline.error_code, baseline.error_message, request.market)
        request.baseline_fingerprint = baseline.value.fingerprint if baseline.value is not None else None

        outcome = await self.client.submit(build.message, signer)
        if not outcome.ok:
            request.error = f"{outcome.error_code.value}: {outcome.error_message}"
            message = outcome.error_message
            if outcome.error_code is ErrorCode.ENDPOINT_EXHAUSTED and outcome.maybe_delivered:
                # May have landed anyway: poll it like any submitted request
                self.tracker.record_submission(request)
                message += ". The request may still land; it is being watched."
            else:
                self.tracker.record_failure(request)
            return failure_result(
                outcome.error_code,
                message,
                request.market,
                request_id=request.request_id,
                status=request.status,
                endpoint=outcome.endpoint,
            )

        request.signature = outcome.value
        self.tracker.record_submission(request)
        Logger.success(
            f"[TRADER] {request.kind.value} {request.market} {request.side.name} "
            f"submitted: {outcome.value[:16]}..."
        )
        return success_result(
            outcome.value,
            request.market,
            request_id=request.request_id,
            counter=request.counter,
            endpoint=outcome.endpoint,
        )

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def _pending_from_build(
        owner_id: str,
        owner: Pubkey,
        build: BuildResult,
        market: str,
        side: Side,
    ) -> PendingRequest:
        derived = build.encoded.derived
        return PendingRequest(
            owner_id=owner_id,
            owner=str(owner),
            market=get_market(market).symbol,
            side=side,
            kind=build.encoded.kind,
            counter=build.counter,
            position_address=str(derived.position),
            request_address=str(derived.position_request),
            size_usd=build.size_usd,
            price=build.price,
        )

    @staticmethod
    def _unmonitored_position(owner_id: str, owner: Pubkey, market: str, side: Side) -> MonitoredPosition:
        m = get_market(market)
        position = derive_position_address(owner, m, collateral_market_for(m, side), side)
        return MonitoredPosition(
            owner_id=owner_id,
            owner=str(owner),
            market=m.symbol,
            side=side,
            entry_price=Decimal(0),
            size_usd=0,
            position_address=str(position),
        )

    @staticmethod
    def _missing_account_message(request: PendingRequest, token_account: Pubkey) -> str:
        collateral = collateral_market_for(get_market(request.market), request.side)
        if request.kind is RequestKind.OPEN:
            hint = f"Deposit {collateral.symbol} to fund it"
            if collateral.symbol == "SOL":
                hint = "Wrap SOL into wSOL to fund it"
            return f"Funding token account {token_account} for {collateral.symbol} does not exist. {hint}."
        return (
            f"Receiving token account {token_account} for {collateral.symbol} does not exist. "
            f"Create it before closing."
        )
