"""
PositionLifecycleTracker Unit Tests
===================================
Request confirmation / expiry, TP/SL exits and price alerts.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest


POSITION = "4MtD6a7on8jLzfFQAXFUWaFzcptUYBt1qK3FodJthCNx"


@pytest.fixture
def tracker(rpc, feed, notifier):
    from src.perps.lifecycle_tracker import PositionLifecycleTracker
    return PositionLifecycleTracker(rpc, feed, notifier, max_polls=3, interval=0.01)


def _request(kind=None, side=None, baseline=None, **overrides):
    from src.perps.types import PendingRequest, RequestKind, Side

    values = dict(
        owner_id="12345",
        owner="4wBqpZM9xaSheZzJSMawUKKwhdpChKbZ5eu5ky4Vigw",
        market="SOL",
        side=side or Side.LONG,
        kind=kind or RequestKind.OPEN,
        counter=0,
        position_address=POSITION,
        request_address="5pD7KhBqE5THhHGHqVYRgeWoBwMeB919F4nGpj6Tdtgn",
        signature="SIG",
        baseline_fingerprint=baseline,
        size_usd=500_000_000,
        price=Decimal("100"),
    )
    values.update(overrides)
    return PendingRequest(**values)


def _position(side=None, entry="100", tp=None, sl=None):
    from src.perps.types import MonitoredPosition, Side

    return MonitoredPosition(
        owner_id="12345",
        owner="4wBqpZM9xaSheZzJSMawUKKwhdpChKbZ5eu5ky4Vigw",
        market="SOL",
        side=side or Side.LONG,
        entry_price=Decimal(entry),
        size_usd=500_000_000,
        position_address=POSITION,
        take_profit_pct=Decimal(tp) if tp else None,
        stop_loss_pct=Decimal(sl) if sl else None,
    )


def _ok():
    from src.shared.execution.execution_result import success_result
    return success_result("CLOSE_SIG", "SOL")


def _failed():
    from src.shared.execution.execution_result import ErrorCode, failure_result
    return failure_result(ErrorCode.ENDPOINT_EXHAUSTED, "All endpoints failed", "SOL")


class TestPnl:

    def test_long_and_short_pnl(self):
        from src.perps.types import Side

        assert _position().pnl_pct(Decimal("111")) == Decimal("11")
        assert _position(side=Side.SHORT).pnl_pct(Decimal("90")) == Decimal("10")

    def test_zero_entry_has_no_pnl(self):
        assert _position(entry="0").pnl_pct(Decimal("50")) == 0

    def test_check_exit(self):
        from src.perps.lifecycle_tracker import PositionLifecycleTracker
        from src.perps.types import CloseReason

        position = _position(tp="10", sl="5")
        assert PositionLifecycleTracker.check_exit(position, Decimal("111")) is CloseReason.TAKE_PROFIT
        assert PositionLifecycleTracker.check_exit(position, Decimal("94")) is CloseReason.STOP_LOSS
        assert PositionLifecycleTracker.check_exit(position, Decimal("103")) is None


class TestConfirmation:
    """SUBMITTED -> CONFIRMED / EXPIRED."""

    @pytest.mark.asyncio
    async def test_open_confirms_when_position_appears(self, tracker, cluster, notifier):
        from solders.pubkey import Pubkey
        from src.shared.execution.execution_result import RequestStatus
        from tests.mocks import MockAccountInfo

        request = _request(take_profit_pct=Decimal("10"))
        tracker.record_submission(request)

        report = await tracker.poll_pending({"SOL": Decimal("101")})
        assert report.confirmed == []
        assert request.polls == 1

        cluster.set_account(Pubkey.from_string(POSITION), MockAccountInfo(b"position-v1"))
        report = await tracker.poll_pending({"SOL": Decimal("101")})

        assert report.confirmed == [request.request_id]
        assert request.status is RequestStatus.CONFIRMED
        position = tracker.get_positions("12345")[0]
        assert position.entry_price == Decimal("101")
        assert position.take_profit_pct == Decimal("10")
        assert any("opened" in t for t in notifier.texts("12345"))

    @pytest.mark.asyncio
    async def test_unchanged_account_expires(self, tracker, notifier):
        """No change for max_polls cycles -> EXPIRED, user told to check."""
        from src.shared.execution.execution_result import RequestStatus

        request = _request()
        tracker.record_submission(request)

        for _ in range(3):
            await tracker.poll_pending()

        assert request.status is RequestStatus.EXPIRED
        assert request.is_terminal
        assert request.error.startswith("CONFIRMATION_TIMEOUT")
        assert tracker.get_positions() == []
        assert any("No confirmation yet" in t for t in notifier.texts())

        # Terminal requests stay queryable and are never polled again
        await tracker.poll_pending()
        assert request.polls == 3
        assert tracker.get_request(request.request_id) is request

    @pytest.mark.asyncio
    async def test_read_failures_count_as_polls(self, tracker, cluster):
        import httpx
        from src.shared.execution.execution_result import RequestStatus

        for client in cluster.clients.values():
            client.fail("get_account_info", httpx.ConnectError("down"), times=10)

        request = _request()
        tracker.record_submission(request)
        for _ in range(3):
            await tracker.poll_pending()

        assert request.status is RequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_close_confirms_when_position_changes(self, tracker, cluster, notifier):
        """A close confirms on any change to the existing position account."""
        from solders.pubkey import Pubkey
        from src.perps.types import RequestKind
        from src.shared.execution.execution_result import RequestStatus
        from src.shared.infrastructure.rpc_manager import AccountSnapshot
        from tests.mocks import MockAccountInfo

        info = MockAccountInfo(b"open")
        cluster.set_account(Pubkey.from_string(POSITION), info)
        baseline = AccountSnapshot(POSITION, info.data, info.lamports, str(info.owner)).fingerprint

        tracker.rearm(_position())
        request = _request(kind=RequestKind.CLOSE, baseline=baseline)
        tracker.record_submission(request)

        await tracker.poll_pending()
        assert request.status is RequestStatus.SUBMITTED

        cluster.set_account(Pubkey.from_string(POSITION), MockAccountInfo(b"closed", lamports=0))
        await tracker.poll_pending()

        assert request.status is RequestStatus.CONFIRMED
        assert tracker.get_positions() == []
        assert any("closed" in t for t in notifier.texts())

    @pytest.mark.asyncio
    async def test_first_open_waits_for_keeper_fill(self, tracker, cluster):
        """The user's transaction creates an empty position; only the fill confirms."""
        from solders.pubkey import Pubkey
        from src.perps.instruction_codec import POSITION_SIZE_OFFSET
        from src.shared.execution.execution_result import RequestStatus
        from tests.mocks import MockAccountInfo

        def position_bytes(size_usd):
            data = bytearray(POSITION_SIZE_OFFSET + 64)
            data[POSITION_SIZE_OFFSET:POSITION_SIZE_OFFSET + 8] = size_usd.to_bytes(8, "little")
            return bytes(data)

        request = _request()
        tracker.record_submission(request)
        request_account = Pubkey.from_string(request.request_address)

        cluster.set_account(Pubkey.from_string(POSITION), MockAccountInfo(position_bytes(0)))
        cluster.set_account(request_account, MockAccountInfo(b"request"))
        await tracker.poll_pending()
        assert request.status is RequestStatus.SUBMITTED

        # Keeper fills: request account closed, position sized
        cluster.set_account(request_account, None)
        cluster.set_account(Pubkey.from_string(POSITION), MockAccountInfo(position_bytes(500_000_000)))
        await tracker.poll_pending()

        assert request.status is RequestStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_open_request_account_must_close(self, tracker, cluster):
        from solders.pubkey import Pubkey
        from src.shared.execution.execution_result import RequestStatus
        from tests.mocks import MockAccountInfo

        request = _request()
        tracker.record_submission(request)
        cluster.set_account(Pubkey.from_string(POSITION), MockAccountInfo(b"position-v1"))
        cluster.set_account(Pubkey.from_string(request.request_address), MockAccountInfo(b"request"))

        await tracker.poll_pending()

        assert request.status is RequestStatus.SUBMITTED
        assert request.polls == 1

    def test_record_failure_is_terminal(self, tracker):
        from src.shared.execution.execution_result import RequestStatus

        request = _request(signature=None, error="REJECTED_ON_CHAIN: insufficient funds")
        tracker.record_failure(request)

        assert request.status is RequestStatus.FAILED
        assert tracker.get_requests(status=RequestStatus.FAILED) == [request]

    def test_has_pending_close(self, tracker):
        from src.perps.types import RequestKind, Side

        tracker.record_submission(_request(kind=RequestKind.CLOSE))

        assert tracker.has_pending_close("12345", "SOL", Side.LONG)
        assert not tracker.has_pending_close("12345", "SOL", Side.SHORT)


class TestTriggers:
    """Take-profit / stop-loss automation."""

    @pytest.mark.asyncio
    async def test_take_profit_fires_once(self, tracker, notifier):
        """Long entry 100, TP 10%, price 111 -> one take-profit close."""
        from src.perps.types import CloseReason

        handler = AsyncMock(return_value=_ok())
        tracker.close_handler = handler
        tracker.rearm(_position(tp="10"))

        report = await tracker.evaluate_positions({"SOL": Decimal("111")})
        again = await tracker.evaluate_positions({"SOL": Decimal("112")})

        assert report.closes == [(("12345", "SOL", _position().side), CloseReason.TAKE_PROFIT, True)]
        assert again.closes == []
        handler.assert_awaited_once()
        assert handler.await_args.args[1] is CloseReason.TAKE_PROFIT
        assert any("Take Profit" in t and "take-profit" in t for t in notifier.texts())

    @pytest.mark.asyncio
    async def test_stop_loss_fires(self, tracker, notifier):
        """Long entry 100, SL 5%, price 94 -> stop-loss close."""
        from src.perps.types import CloseReason

        handler = AsyncMock(return_value=_ok())
        tracker.close_handler = handler
        tracker.rearm(_position(sl="5"))

        report = await tracker.evaluate_positions({"SOL": Decimal("94")})

        assert report.closes[0][1] is CloseReason.STOP_LOSS
        assert any("Stop Loss" in t and "stop-loss" in t for t in notifier.texts())

    @pytest.mark.asyncio
    async def test_short_take_profit(self, tracker):
        from src.perps.types import CloseReason, Side

        tracker.close_handler = AsyncMock(return_value=_ok())
        tracker.rearm(_position(side=Side.SHORT, tp="10"))

        report = await tracker.evaluate_positions({"SOL": Decimal("89")})
        assert report.closes[0][1] is CloseReason.TAKE_PROFIT

    @pytest.mark.asyncio
    async def test_position_removed_before_close_issued(self, tracker):
        """The handler never sees the position still in the monitored set."""
        seen = []

        async def handler(position, reason):
            seen.append(tracker.get_position(*position.key))
            return _ok()

        tracker.close_handler = handler
        tracker.rearm(_position(tp="10"))
        await tracker.evaluate_positions({"SOL": Decimal("120")})

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_failed_close_rearms_and_notifies_once(self, tracker, notifier):
        handler = AsyncMock(return_value=_failed())
        tracker.close_handler = handler
        tracker.rearm(_position(sl="5"))

        await tracker.evaluate_positions({"SOL": Decimal("90")})
        await tracker.evaluate_positions({"SOL": Decimal("90")})

        assert handler.await_count == 2
        assert len(tracker.get_positions()) == 1
        assert len([t for t in notifier.texts() if "failed" in t]) == 1

    @pytest.mark.parametrize("code", ["REJECTED_ON_CHAIN", "MISSING_PREREQUISITE"])
    @pytest.mark.asyncio
    async def test_refused_close_is_never_resent(self, tracker, notifier, code):
        """A refused close clears the triggers and surfaces the error verbatim."""
        from src.perps.types import Side
        from src.shared.execution.execution_result import ErrorCode, failure_result

        handler = AsyncMock(return_value=failure_result(ErrorCode[code], "custom program error: 0x1771", "SOL"))
        tracker.close_handler = handler
        tracker.rearm(_position(sl="5"))

        for _ in range(3):
            await tracker.evaluate_positions({"SOL": Decimal("94")})

        handler.assert_awaited_once()
        position = tracker.get_position("12345", "SOL", Side.LONG)
        assert position.stop_loss_pct is None and position.take_profit_pct is None
        assert any("custom program error: 0x1771" in t for t in notifier.texts())

    @pytest.mark.asyncio
    async def test_close_marked_in_flight_until_handler_returns(self, tracker):
        from src.perps.types import Side

        seen = []

        async def handler(position, reason):
            seen.append(tracker.is_closing(*position.key))
            return _ok()

        tracker.close_handler = handler
        tracker.rearm(_position(tp="10"))
        await tracker.evaluate_positions({"SOL": Decimal("120")})

        assert seen == [True]
        assert not tracker.is_closing("12345", "SOL", Side.LONG)

    @pytest.mark.asyncio
    async def test_no_price_skips(self, tracker):
        handler = AsyncMock(return_value=_ok())
        tracker.close_handler = handler
        tracker.rearm(_position(tp="1", sl="1"))

        await tracker.evaluate_positions({})
        handler.assert_not_awaited()

    def test_set_triggers(self, tracker):
        from src.perps.types import Side

        tracker.rearm(_position())

        assert tracker.set_triggers("12345", "SOL", Side.LONG, Decimal("10"), Decimal("5"))
        assert tracker.get_position("12345", "SOL", Side.LONG).stop_loss_pct == Decimal("5")
        assert not tracker.set_triggers("12345", "ETH", Side.LONG, Decimal("10"), None)
        with pytest.raises(ValueError):
            tracker.set_triggers("12345", "SOL", Side.LONG, Decimal("-1"), None)

        assert tracker.cancel_triggers("12345", "SOL", Side.LONG)
        assert tracker.get_position("12345", "SOL", Side.LONG).take_profit_pct is None


class TestAlerts:

    @pytest.mark.asyncio
    async def test_alert_fires_once(self, tracker, notifier):
        from src.perps.types import AlertDirection

        alert = tracker.add_alert("12345", "sol", Decimal("150"), AlertDirection.ABOVE)

        report = await tracker.evaluate_alerts({"SOL": Decimal("149")})
        assert report.alerts_fired == []

        report = await tracker.evaluate_alerts({"SOL": Decimal("150")})
        assert report.alerts_fired == [alert.alert_id]
        assert tracker.list_alerts() == []
        assert any("Price Alert" in t for t in notifier.texts("12345"))

    def test_remove_alert_checks_owner(self, tracker):
        from src.perps.types import AlertDirection

        alert = tracker.add_alert("12345", "ETH", Decimal("2000"), AlertDirection.BELOW)

        assert not tracker.remove_alert("999", alert.alert_id)
        assert tracker.remove_alert("12345", alert.alert_id)

    def test_non_positive_target_rejected(self, tracker):
        from src.perps.types import AlertDirection

        with pytest.raises(ValueError):
            tracker.add_alert("12345", "SOL", Decimal("0"), AlertDirection.ABOVE)


class TestLoop:

    @pytest.mark.asyncio
    async def test_tick_fetches_prices_once(self, tracker, feed):
        from src.perps.types import AlertDirection

        tracker.rearm(_position(tp="50"))
        tracker.add_alert("12345", "ETH", Decimal("1"), AlertDirection.BELOW)

        await tracker.tick()
        assert feed.call_count == 2  # SOL and ETH

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_break_tick(self, rpc, feed):
        from src.perps.lifecycle_tracker import PositionLifecycleTracker
        from src.perps.types import AlertDirection
        from tests.mocks import RecordingNotifier

        tracker = PositionLifecycleTracker(rpc, feed, RecordingNotifier(fail=True))
        tracker.add_alert("12345", "SOL", Decimal("1"), AlertDirection.ABOVE)

        report = await tracker.tick()
        assert len(report.alerts_fired) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tracker):
        import asyncio

        tracker.start()
        await asyncio.sleep(0.05)
        await tracker.stop()

        assert tracker._task is None

    @pytest.mark.asyncio
    async def test_load_restores_state(self, rpc, feed, notifier, db, owner):
        """Restart: pending requests, positions, alerts and counters come back."""
        from src.perps.address_registry import CounterSequence
        from src.perps.lifecycle_tracker import PositionLifecycleTracker
        from src.perps.types import AlertDirection

        first = PositionLifecycleTracker(rpc, feed, notifier, db=db)
        first.record_submission(_request(counter=4, owner=str(owner)))
        first.rearm(_position(tp="10"))
        first.add_alert("12345", "BTC", Decimal("70000"), AlertDirection.ABOVE)

        counters = CounterSequence()
        second = PositionLifecycleTracker(rpc, feed, notifier, db=db, counters=counters)
        second.load()

        assert len(second.get_requests()) == 1
        assert second.get_position("12345", "SOL", _position().side).take_profit_pct == Decimal("10")
        assert len(second.list_alerts("12345")) == 1
        assert counters.next(owner) == 5


class TestSharedDatabase:
    """A running monitor picks up state written by other processes."""

    @pytest.mark.asyncio
    async def test_alert_added_elsewhere_fires(self, rpc, feed, notifier, db):
        from src.perps.lifecycle_tracker import PositionLifecycleTracker
        from src.perps.types import AlertDirection

        monitor = PositionLifecycleTracker(rpc, feed, notifier, db=db)
        monitor.load()
        cli = PositionLifecycleTracker(rpc, feed, notifier, db=db)
        alert = cli.add_alert("12345", "SOL", Decimal("90"), AlertDirection.ABOVE)

        report = await monitor.tick()

        assert report.alerts_fired == [alert.alert_id]
        assert db.get_alerts() == []

    @pytest.mark.asyncio
    async def test_request_submitted_elsewhere_is_polled(self, rpc, feed, notifier, db, owner):
        from src.perps.address_registry import CounterSequence
        from src.perps.lifecycle_tracker import PositionLifecycleTracker

        counters = CounterSequence()
        monitor = PositionLifecycleTracker(rpc, feed, notifier, db=db, counters=counters)
        monitor.load()
        request = _request(counter=3, owner=str(owner))
        PositionLifecycleTracker(rpc, feed, notifier, db=db).record_submission(request)

        await monitor.tick()

        assert monitor.get_request(request.request_id).polls == 1
        assert counters.next(owner) == 4

    @pytest.mark.asyncio
    async def test_triggers_set_elsewhere_take_effect(self, rpc, feed, notifier, db):
        from src.perps.lifecycle_tracker import PositionLifecycleTracker

        monitor = PositionLifecycleTracker(rpc, feed, notifier, db=db)
        monitor.close_handler = AsyncMock(return_value=_ok())
        monitor.rearm(_position())

        cli = PositionLifecycleTracker(rpc, feed, notifier, db=db)
        cli.load()
        cli.set_triggers("12345", "SOL", _position().side, None, Decimal("50"))
        feed.set_price("SOL", "40")

        report = await monitor.tick()

        assert len(report.closes) == 1
        monitor.close_handler.assert_awaited_once()
