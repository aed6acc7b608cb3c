"""
Position Lifecycle Tracker
==========================
Follows every submitted request to a terminal status and runs the
take-profit / stop-loss / price-alert automation on top.

Request state machine:

    SUBMITTED ──(position changed, request account closed)──> CONFIRMED
        │
        └──(no change after N polls)────────> EXPIRED

    FAILED is recorded directly when submission itself fails.
    CONFIRMED, EXPIRED and FAILED are terminal and stay queryable.

Exit Triggers:
=============
1. TAKE_PROFIT: price-move P&L% >= take_profit_pct
2. STOP_LOSS:   price-move P&L% <= -stop_loss_pct

P&L is the raw price move (long: (price - entry) / entry, short: the
inverse), not leverage-adjusted. A position is removed from the monitored
set and marked in flight before its close request is built; the mark is
released only once the close is either recorded as SUBMITTED or has
failed, so a user close and an automated close can never both fire.

Only close failures where nothing reached the chain keep the trigger armed.
A rejected close is never resent: the position stays watched with its
triggers cleared.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from config.settings import Settings
from src.perps.address_registry import CounterSequence
from src.perps.instruction_codec import decode_position_size
from src.perps.types import (
    AlertDirection,
    CloseReason,
    MonitoredPosition,
    PendingRequest,
    PriceAlert,
    RequestKind,
    Side,
)
from src.shared.execution.execution_result import ErrorCode, RequestStatus, TradeResult
from src.shared.feeds.price_source import PriceFeed
from src.shared.infrastructure.rpc_manager import AccountSnapshot, EndpointFailoverClient
from src.shared.notification.telegram_manager import NotificationSink
from src.shared.system.logging import Logger
from src.shared.system.persistence import PersistenceDB


CloseHandler = Callable[[MonitoredPosition, CloseReason], Awaitable[TradeResult]]
PositionKey = Tuple[str, str, Side]

# Close failures where nothing reached the chain; the trigger stays armed
RETRYABLE_CLOSE_ERRORS = frozenset({
    ErrorCode.ENDPOINT_EXHAUSTED,
    ErrorCode.PRICE_UNAVAILABLE,
    ErrorCode.SIGNER_UNAVAILABLE,
})


@dataclass
class TickReport:
    """What one monitoring cycle did."""

    confirmed: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    closes: List[Tuple[PositionKey, CloseReason, bool]] = field(default_factory=list)
    alerts_fired: List[str] = field(default_factory=list)


class PositionLifecycleTracker:
    """
    Owns pending requests, monitored positions and price alerts.

    Usage:
        tracker = PositionLifecycleTracker(client, price_feed, notifier, db=get_db())
        tracker.load()
        tracker.close_handler = trader.close_for_trigger
        tracker.start()
    """

    def __init__(
        self,
        client: EndpointFailoverClient,
        price_feed: PriceFeed,
        notifier: NotificationSink,
        db: Optional[PersistenceDB] = None,
        counters: Optional[CounterSequence] = None,
        close_handler: Optional[CloseHandler] = None,
        interval: float = None,
        max_polls: int = None,
    ):
        self.client = client
        self.price_feed = price_feed
        self.notifier = notifier
        self.db = db
        self.counters = counters
        self.close_handler = close_handler
        self.interval = interval if interval is not None else Settings.MONITOR_INTERVAL_SEC
        self.max_polls = max_polls if max_polls is not None else Settings.CONFIRMATION_MAX_POLLS

        self._requests: Dict[str, PendingRequest] = {}
        self._positions: Dict[PositionKey, MonitoredPosition] = {}
        self._alerts: Dict[str, PriceAlert] = {}
        self._failed_close_notified: set = set()
        self._closing: set = set()

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ═══════════════════════════════════════════════════════════════════
    # STATE RECOVERY
    # ═══════════════════════════════════════════════════════════════════

    def load(self) -> None:
        """Restore requests, positions and alerts; push counters past stored ones."""
        if self.db is None:
            return
        for request in self.db.get_requests():
            self._requests[request.request_id] = request
        for position in self.db.get_positions():
            self._positions[position.key] = position
        for alert in self.db.get_alerts():
            self._alerts[alert.alert_id] = alert
        if self.counters is not None:
            for owner, counter in self.db.max_counters().items():
                self.counters.observe(Pubkey.from_string(owner), counter)

        pending = sum(1 for r in self._requests.values() if not r.is_terminal)
        Logger.info(
            f"[TRACKER] Restored {pending} pending request(s), "
            f"{len(self._positions)} position(s), {len(self._alerts)} alert(s)"
        )

    def sync(self) -> None:
        """
        Merge state written by other processes sharing the database.

        Every change this tracker makes is written through, so the stored
        positions and alerts are authoritative. Requests are only ever
        created elsewhere, so unknown SUBMITTED ones are adopted.
        """
        if self.db is None:
            return

        adopted = 0
        for request in self.db.get_requests(status=RequestStatus.SUBMITTED):
            if request.request_id in self._requests:
                continue
            self._requests[request.request_id] = request
            adopted += 1
            if self.counters is not None:
                self.counters.observe(Pubkey.from_string(request.owner), request.counter)

        stored = {p.key: p for p in self.db.get_positions()}
        for key in list(self._positions):
            if key not in stored:
                del self._positions[key]
        for key, position in stored.items():
            if key not in self._closing:
                self._positions[key] = position

        self._alerts = {a.alert_id: a for a in self.db.get_alerts()}

        if adopted:
            Logger.info(f"[TRACKER] Adopted {adopted} request(s) submitted elsewhere")

    # ═══════════════════════════════════════════════════════════════════
    # REQUESTS
    # ═══════════════════════════════════════════════════════════════════

    def record_submission(self, request: PendingRequest) -> None:
        request.status = RequestStatus.SUBMITTED
        self._requests[request.request_id] = request
        self._persist_request(request)
        Logger.info(
            f"[TRACKER] {request.kind.value} {request.market} {request.side.name} submitted "
            f"(counter={request.counter}, tx={(request.signature or '')[:12]}...)"
        )

    def record_failure(self, request: PendingRequest) -> None:
        request.status = RequestStatus.FAILED
        request.resolved_at = time.time()
        self._requests[request.request_id] = request
        self._persist_request(request)
        Logger.warning(f"[TRACKER] {request.kind.value} {request.market} failed: {request.error}")

    def get_request(self, request_id: str) -> Optional[PendingRequest]:
        return self._requests.get(request_id)

    def get_requests(self, owner_id: str = None, status: RequestStatus = None) -> List[PendingRequest]:
        requests = [
            r for r in self._requests.values()
            if (owner_id is None or r.owner_id == owner_id)
            and (status is None or r.status is status)
        ]
        return sorted(requests, key=lambda r: r.submitted_at)

    def has_pending_close(self, owner_id: str, market: str, side: Side) -> bool:
        return any(
            r.kind is RequestKind.CLOSE and r.status is RequestStatus.SUBMITTED
            and r.owner_id == owner_id and r.market == market and r.side is side
            for r in self._requests.values()
        )

    def is_closing(self, owner_id: str, market: str, side: Side) -> bool:
        """A close for this position is being built, sent, or awaiting confirmation."""
        return (owner_id, market, side) in self._closing or self.has_pending_close(owner_id, market, side)

    async def poll_pending(self, prices: Dict[str, Decimal] = None) -> TickReport:
        """Advance every SUBMITTED request by one poll."""
        report = TickReport()
        prices = prices or {}

        for request in self.get_requests(status=RequestStatus.SUBMITTED):
            outcome = await self.client.read_account(Pubkey.from_string(request.position_address))
            if outcome.ok:
                snapshot = outcome.value
                fingerprint = snapshot.fingerprint if snapshot is not None else None
                if fingerprint != request.baseline_fingerprint and await self._executed(request, snapshot):
                    await self._confirm(request, prices.get(request.market))
                    report.confirmed.append(request.request_id)
                    continue
            else:
                Logger.debug(f"[TRACKER] Poll read failed for {request.request_id}: {outcome.error_message}")

            request.polls += 1
            if request.polls >= self.max_polls:
                await self._expire(request)
                report.expired.append(request.request_id)
            else:
                self._persist_request(request)

        return report

    async def _executed(self, request: PendingRequest, snapshot: Optional[AccountSnapshot]) -> bool:
        """
        The keeper has filled the request, not merely the user's transaction landed.

        The request account is closed once the keeper processes it, and an
        open must leave the position with a non-zero size (the user's own
        transaction can create a first position at size 0).
        """
        if request.kind is RequestKind.OPEN and snapshot is not None:
            if decode_position_size(snapshot.data) == 0:
                return False
        outcome = await self.client.read_account(Pubkey.from_string(request.request_address))
        return outcome.ok and outcome.value is None

    async def _confirm(self, request: PendingRequest, price: Optional[Decimal]) -> None:
        request.status = RequestStatus.CONFIRMED
        request.error = None
        request.resolved_at = time.time()
        self._persist_request(request)

        if request.kind is RequestKind.OPEN:
            entry = price if price is not None else request.price
            self._arm_position(request, entry)
            await self._notify(
                request.owner_id,
                f"✅ {request.market} {request.side.name} position opened"
                + (f" at ${entry}" if entry is not None else ""),
            )
        else:
            key = (request.owner_id, request.market, request.side)
            if self._positions.pop(key, None) is not None and self.db is not None:
                self.db.delete_position(*key)
            await self._notify(request.owner_id, f"✅ {request.market} {request.side.name} position closed")
        Logger.success(f"[TRACKER] {request.kind.value} {request.market} {request.side.name} confirmed")

    async def _expire(self, request: PendingRequest) -> None:
        request.status = RequestStatus.EXPIRED
        request.error = f"{ErrorCode.CONFIRMATION_TIMEOUT.value}: position unchanged after {request.polls} polls"
        request.resolved_at = time.time()
        self._persist_request(request)
        Logger.warning(f"[TRACKER] {request.request_id} expired after {request.polls} polls")
        await self._notify(
            request.owner_id,
            f"⏳ No confirmation yet for your {request.market} {request.side.name} "
            f"{request.kind.value.lower()} request. Check your positions before retrying.",
        )

    # ═══════════════════════════════════════════════════════════════════
    # MONITORED POSITIONS
    # ═══════════════════════════════════════════════════════════════════

    def _arm_position(self, request: PendingRequest, entry: Optional[Decimal]) -> None:
        key = (request.owner_id, request.market, request.side)
        existing = self._positions.get(key)
        if existing is not None:
            existing.size_usd += request.size_usd
            if request.take_profit_pct is not None:
                existing.take_profit_pct = request.take_profit_pct
            if request.stop_loss_pct is not None:
                existing.stop_loss_pct = request.stop_loss_pct
            position = existing
        else:
            position = MonitoredPosition(
                owner_id=request.owner_id,
                owner=request.owner,
                market=request.market,
                side=request.side,
                entry_price=entry if entry is not None else Decimal(0),
                size_usd=request.size_usd,
                position_address=request.position_address,
                take_profit_pct=request.take_profit_pct,
                stop_loss_pct=request.stop_loss_pct,
            )
        self._positions[key] = position
        if self.db is not None:
            self.db.upsert_position(position)

    def get_positions(self, owner_id: str = None) -> List[MonitoredPosition]:
        return [p for p in self._positions.values() if owner_id is None or p.owner_id == owner_id]

    def get_position(self, owner_id: str, market: str, side: Side) -> Optional[MonitoredPosition]:
        return self._positions.get((owner_id, market, side))

    def take_position(self, owner_id: str, market: str, side: Side) -> Optional[MonitoredPosition]:
        """
        Remove a position from monitoring and mark its close in flight.

        The mark holds until ``release_close``; by then a submitted close is
        visible through ``has_pending_close``.
        """
        self._closing.add((owner_id, market, side))
        position = self._positions.pop((owner_id, market, side), None)
        if position is not None and self.db is not None:
            self.db.delete_position(owner_id, market, side)
        return position

    def release_close(self, owner_id: str, market: str, side: Side) -> None:
        self._closing.discard((owner_id, market, side))

    def rearm(self, position: MonitoredPosition) -> None:
        """Put a position back under watch after its close never reached the chain."""
        self._positions[position.key] = position
        if self.db is not None:
            self.db.upsert_position(position)

    def set_triggers(
        self,
        owner_id: str,
        market: str,
        side: Side,
        take_profit_pct: Optional[Decimal],
        stop_loss_pct: Optional[Decimal],
    ) -> bool:
        """Set TP/SL on a monitored position. Returns False if none is monitored."""
        for value in (take_profit_pct, stop_loss_pct):
            if value is not None and value <= 0:
                raise ValueError("Take-profit and stop-loss must be positive percentages")

        position = self._positions.get((owner_id, market, side))
        if position is None:
            return False
        position.take_profit_pct = take_profit_pct
        position.stop_loss_pct = stop_loss_pct
        if self.db is not None:
            self.db.upsert_position(position)
        Logger.info(f"[TRACKER] {market} {side.name} TP={take_profit_pct}% SL={stop_loss_pct}%")
        return True

    def cancel_triggers(self, owner_id: str, market: str, side: Side) -> bool:
        return self.set_triggers(owner_id, market, side, None, None)

    @staticmethod
    def check_exit(position: MonitoredPosition, price: Decimal) -> Optional[CloseReason]:
        pnl = position.pnl_pct(price)
        if position.take_profit_pct is not None and pnl >= position.take_profit_pct:
            return CloseReason.TAKE_PROFIT
        if position.stop_loss_pct is not None and pnl <= -position.stop_loss_pct:
            return CloseReason.STOP_LOSS
        return None

    async def evaluate_positions(self, prices: Dict[str, Decimal]) -> TickReport:
        report = TickReport()
        for key, position in list(self._positions.items()):
            price = prices.get(position.market)
            if price is None or position.entry_price <= 0:
                continue
            reason = self.check_exit(position, price)
            if reason is None:
                continue

            pnl = position.pnl_pct(price)
            # Exclusion: gone from the monitored set before any close is built
            self.take_position(*key)
            try:
                submitted = await self._issue_close(position, reason, price, pnl)
            finally:
                self.release_close(*key)
            report.closes.append((key, reason, submitted))
        return report

    async def _issue_close(
        self,
        position: MonitoredPosition,
        reason: CloseReason,
        price: Decimal,
        pnl: Decimal,
    ) -> bool:
        label = "🎯 Take Profit!" if reason is CloseReason.TAKE_PROFIT else "🛑 Stop Loss!"
        Logger.info(f"[TRACKER] {label} {position.market} {position.side.name} P&L {pnl:+.2f}%")

        if self.close_handler is None:
            Logger.error("[TRACKER] No close handler attached; re-arming position")
            self.rearm(position)
            return False

        result = await self.close_handler(position, reason)
        if result.success:
            self._failed_close_notified.discard(position.key)
            await self._notify(
                position.owner_id,
                f"{label} Closing {position.market} {position.side.name} ({reason.value}) "
                f"at ${price}, P&L {pnl:+.2f}%",
            )
            return True

        if self.has_pending_close(*position.key):
            # Send unacknowledged but possibly landed: the request is polled instead
            await self._notify(
                position.owner_id,
                f"⚠️ {reason.value} close for {position.market} {position.side.name} was not "
                f"acknowledged ({result.error_message}). Watching for it to land.",
            )
            return False

        if result.error_code in RETRYABLE_CLOSE_ERRORS:
            self.rearm(position)
            if position.key not in self._failed_close_notified:
                self._failed_close_notified.add(position.key)
                await self._notify(
                    position.owner_id,
                    f"⚠️ {reason.value} close for {position.market} {position.side.name} failed: "
                    f"{result.error_message}. Retrying.",
                )
            return False

        # Refused outright: keep watching the position but never resend this close
        position.take_profit_pct = None
        position.stop_loss_pct = None
        self.rearm(position)
        self._failed_close_notified.discard(position.key)
        Logger.warning(f"[TRACKER] {reason.value} close for {position.market} rejected; triggers cleared")
        await self._notify(
            position.owner_id,
            f"❌ {reason.value} close for {position.market} {position.side.name} was rejected: "
            f"{result.error_message}. Triggers cleared; close manually or set new ones.",
        )
        return False

    # ═══════════════════════════════════════════════════════════════════
    # PRICE ALERTS
    # ═══════════════════════════════════════════════════════════════════

    def add_alert(self, owner_id: str, symbol: str, target_price: Decimal, direction: AlertDirection) -> PriceAlert:
        if target_price <= 0:
            raise ValueError("Target price must be positive")
        alert = PriceAlert(
            owner_id=owner_id,
            symbol=symbol.upper(),
            target_price=target_price,
            direction=direction,
        )
        self._alerts[alert.alert_id] = alert
        if self.db is not None:
            self.db.save_alert(alert)
        Logger.info(f"[ALERT] {alert.symbol} {direction.value} ${target_price} set for {owner_id}")
        return alert

    def remove_alert(self, owner_id: str, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.owner_id != owner_id:
            return False
        del self._alerts[alert_id]
        if self.db is not None:
            self.db.delete_alert(alert_id)
        return True

    def list_alerts(self, owner_id: str = None) -> List[PriceAlert]:
        return [a for a in self._alerts.values() if owner_id is None or a.owner_id == owner_id]

    async def evaluate_alerts(self, prices: Dict[str, Decimal]) -> TickReport:
        report = TickReport()
        for alert in list(self._alerts.values()):
            price = prices.get(alert.symbol)
            if price is None or not alert.is_triggered(price):
                continue
            del self._alerts[alert.alert_id]
            if self.db is not None:
                self.db.delete_alert(alert.alert_id)
            word = "above" if alert.direction is AlertDirection.ABOVE else "below"
            await self._notify(
                alert.owner_id,
                f"🔔 Price Alert! {alert.symbol} is ${price}, {word} your target ${alert.target_price}",
            )
            report.alerts_fired.append(alert.alert_id)
        return report

    # ═══════════════════════════════════════════════════════════════════
    # MONITORING LOOP
    # ═══════════════════════════════════════════════════════════════════

    def _watched_symbols(self) -> set:
        symbols = {p.market for p in self._positions.values()}
        symbols.update(a.symbol for a in self._alerts.values())
        symbols.update(
            r.market for r in self._requests.values()
            if r.status is RequestStatus.SUBMITTED and r.kind is RequestKind.OPEN
        )
        return symbols

    async def tick(self) -> TickReport:
        """One cycle: merge shared state, poll pending requests, then TP/SL, then alerts."""
        self.sync()
        symbols = self._watched_symbols()
        prices = await self.price_feed.get_prices(symbols) if symbols else {}

        report = await self.poll_pending(prices)
        positions = await self.evaluate_positions(prices)
        alerts = await self.evaluate_alerts(prices)
        report.closes.extend(positions.closes)
        report.alerts_fired.extend(alerts.alerts_fired)
        return report

    async def run(self) -> None:
        self._running = True
        Logger.section("Position Monitor")
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                Logger.error(f"[TRACKER] Tick failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            Logger.info(f"[TRACKER] Monitoring every {self.interval:.0f}s")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        Logger.info("[TRACKER] Stopped")

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _persist_request(self, request: PendingRequest) -> None:
        if self.db is not None:
            self.db.upsert_request(request)

    async def _notify(self, owner_id: str, text: str) -> None:
        try:
            await self.notifier.notify(owner_id, text)
        except Exception as e:
            Logger.warning(f"[TG] Notification to {owner_id} failed: {e}")
