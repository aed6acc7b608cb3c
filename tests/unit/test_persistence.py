"""
PersistenceDB Unit Tests
========================
SQLite round trips for requests, positions, alerts and counters.

Uses a tmp_path database; the singleton is reset around each test.
"""

from decimal import Decimal


def _request(**overrides):
    from src.perps.types import PendingRequest, RequestKind, Side

    values = dict(
        owner_id="12345",
        owner="4wBqpZM9xaSheZzJSMawUKKwhdpChKbZ5eu5ky4Vigw",
        market="ETH",
        side=Side.SHORT,
        kind=RequestKind.OPEN,
        counter=2,
        position_address="C2WhJ7h8m3RdCJZW2q7AWL3PYJkFcuxduVQkeQgMeaBH",
        request_address="req",
        signature="SIG",
        price=Decimal("3000.5"),
        stop_loss_pct=Decimal("7.5"),
    )
    values.update(overrides)
    return PendingRequest(**values)


class TestRequests:

    def test_request_round_trip(self, db):
        """Decimals and enums survive storage exactly."""
        from src.perps.types import RequestKind, Side
        from src.shared.execution.execution_result import RequestStatus

        request = _request()
        db.upsert_request(request)
        loaded = db.get_requests()[0]

        assert loaded.request_id == request.request_id
        assert loaded.side is Side.SHORT
        assert loaded.kind is RequestKind.OPEN
        assert loaded.status is RequestStatus.SUBMITTED
        assert loaded.price == Decimal("3000.5")
        assert loaded.stop_loss_pct == Decimal("7.5")
        assert loaded.take_profit_pct is None

    def test_status_update(self, db):
        from src.shared.execution.execution_result import RequestStatus

        request = _request()
        db.upsert_request(request)
        request.status = RequestStatus.EXPIRED
        request.polls = 6
        db.upsert_request(request)

        assert db.get_requests(status=RequestStatus.SUBMITTED) == []
        expired = db.get_requests(status=RequestStatus.EXPIRED)
        assert len(expired) == 1 and expired[0].polls == 6

    def test_filter_by_owner(self, db):
        db.upsert_request(_request())
        db.upsert_request(_request(owner_id="other"))

        assert len(db.get_requests(owner_id="12345")) == 1

    def test_max_counters_per_owner_address(self, db):
        db.upsert_request(_request(counter=2))
        db.upsert_request(_request(counter=7))
        db.upsert_request(_request(owner="OtherOwner", counter=1))

        assert db.max_counters() == {
            "4wBqpZM9xaSheZzJSMawUKKwhdpChKbZ5eu5ky4Vigw": 7,
            "OtherOwner": 1,
        }


class TestPositionsAndAlerts:

    def test_position_upsert_and_delete(self, db):
        from src.perps.types import MonitoredPosition, Side

        position = MonitoredPosition(
            owner_id="12345", owner="o", market="SOL", side=Side.LONG,
            entry_price=Decimal("100.25"), size_usd=500_000_000, position_address="p",
            take_profit_pct=Decimal("10"),
        )
        db.upsert_position(position)
        position.stop_loss_pct = Decimal("5")
        db.upsert_position(position)

        stored = db.get_positions()
        assert len(stored) == 1
        assert stored[0].entry_price == Decimal("100.25")
        assert stored[0].stop_loss_pct == Decimal("5")

        db.delete_position("12345", "SOL", Side.LONG)
        assert db.get_positions() == []

    def test_alerts(self, db):
        from src.perps.types import AlertDirection, PriceAlert

        alert = PriceAlert(owner_id="12345", symbol="BTC", target_price=Decimal("70000"), direction=AlertDirection.ABOVE)
        db.save_alert(alert)

        assert db.get_alerts()[0].direction is AlertDirection.ABOVE
        assert db.delete_alert(alert.alert_id)
        assert not db.delete_alert(alert.alert_id)


class TestCounters:

    def test_counter_never_moves_backwards(self, db):
        db.save_counter("owner", 5)
        db.save_counter("owner", 3)

        assert db.load_counters() == {"owner": 5}

    def test_reserve_counter_respects_floor(self, db):
        assert db.reserve_counter("owner") == 0
        assert db.reserve_counter("owner") == 1
        assert db.reserve_counter("owner", floor=7) == 7
        assert db.reserve_counter("owner", floor=3) == 8
        assert db.load_counters() == {"owner": 9}

    def test_stats(self, db):
        db.upsert_request(_request())
        stats = db.get_stats()

        assert stats["requests_total"] == 1
        assert stats["requests_pending"] == 1
        assert stats["positions"] == 0
