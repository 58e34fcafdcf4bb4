"""
Delivery Tracker Tests

- ensure_deliveries is idempotent and ordered
- the transition table (terminal states are sticky, repeats are no-ops)
- compare-and-set under concurrent writers
- send leases and retry accounting
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from donorlink.exceptions import InvalidTransitionError, NotFoundError
from donorlink.models.alert_delivery import DeliveryChannel, DeliveryState
from donorlink.services.delivery_tracker import DeliveryTracker

from factories import NOW, make_donor

PUSH = DeliveryChannel.PUSH
SMS = DeliveryChannel.SMS

AUDIENCE = [make_donor("d2", "O+"), make_donor("d1", "O-"), make_donor("d3", "A+")]


def _run(coro):
    return asyncio.run(coro)


class TestEnsureDeliveries:

    def test_creates_cross_product_in_donor_order(self, store, channels):
        tracker = DeliveryTracker(store, max_attempts=3)

        deliveries = _run(tracker.ensure_deliveries("a1", AUDIENCE, channels))

        assert [(d.donor_id, d.channel) for d in deliveries] == [
            ("d1", PUSH), ("d1", SMS), ("d2", PUSH), ("d2", SMS), ("d3", PUSH), ("d3", SMS),
        ]
        assert all(d.state == DeliveryState.PENDING and d.attempt_count == 0 for d in deliveries)

    def test_second_call_returns_existing_records(self, store, channels):
        tracker = DeliveryTracker(store, max_attempts=3)

        async def scenario():
            first = await tracker.ensure_deliveries("a1", AUDIENCE, channels)
            await tracker.mark_sent("a1", "d1", PUSH, now=NOW)
            second = await tracker.ensure_deliveries("a1", AUDIENCE, channels)
            return first, second, await tracker.list_for_alert("a1")

        first, second, stored = _run(scenario())

        assert len(stored) == len(first) == len(second) == 6
        assert [d.id for d in first] == [d.id for d in second]
        assert second[0].state == DeliveryState.SENT

    def test_duplicate_donors_and_channels_are_collapsed(self, store):
        tracker = DeliveryTracker(store, max_attempts=3)
        audience = AUDIENCE + [make_donor("d1", "O-")]

        deliveries = _run(tracker.ensure_deliveries("a1", audience, ["sms", SMS, "sms"]))

        assert len(deliveries) == 3

    def test_concurrent_creators_share_records(self, store, channels):
        tracker = DeliveryTracker(store, max_attempts=3)

        async def scenario():
            results = await asyncio.gather(*(
                tracker.ensure_deliveries("a1", AUDIENCE, channels) for _ in range(5)
            ))
            return results, await tracker.list_for_alert("a1")

        results, stored = _run(scenario())
        assert len(stored) == 6
        assert all([d.id for d in r] == [d.id for d in results[0]] for r in results)

    def test_listener_sees_created_records(self, store):
        listener = AsyncMock()
        tracker = DeliveryTracker(store, max_attempts=3, on_change=listener)

        _run(tracker.ensure_deliveries("a1", AUDIENCE[:1], [PUSH]))

        listener.assert_awaited_once()

    def test_listener_failure_does_not_break_writes(self, store):
        tracker = DeliveryTracker(store, max_attempts=3, on_change=AsyncMock(side_effect=RuntimeError("bus down")))

        deliveries = _run(tracker.ensure_deliveries("a1", AUDIENCE[:1], [PUSH]))

        assert len(deliveries) == 1


class TestTransitions:

    @pytest.fixture
    def tracker(self, store):
        _run(DeliveryTracker(store).ensure_deliveries("a1", AUDIENCE[:1], [PUSH, SMS]))
        return DeliveryTracker(store, max_attempts=3)

    def test_happy_path(self, tracker):
        async def scenario():
            sent = await tracker.mark_sent("a1", "d2", SMS, provider_message_id="SM1", now=NOW)
            delivered = await tracker.mark_delivered("a1", "d2", SMS, now=NOW + timedelta(seconds=5))
            return sent, delivered

        sent, delivered = _run(scenario())
        assert sent.state == DeliveryState.SENT
        assert sent.attempt_count == 1
        assert sent.provider_message_id == "SM1"
        assert delivered.state == DeliveryState.DELIVERED
        assert delivered.sent_at == NOW

    def test_repeated_delivered_callback_is_noop(self, tracker):
        async def scenario():
            await tracker.mark_sent("a1", "d2", SMS, now=NOW)
            first = await tracker.mark_delivered("a1", "d2", SMS, now=NOW)
            again = await tracker.mark_delivered("a1", "d2", SMS, now=NOW + timedelta(hours=1))
            return first, again

        first, again = _run(scenario())
        assert again.state == DeliveryState.DELIVERED
        assert again.delivered_at == first.delivered_at
        assert again.updated_at == first.updated_at

    def test_delivered_is_sticky(self, tracker):
        async def scenario():
            await tracker.mark_delivered("a1", "d2", SMS, now=NOW)
            await tracker.record_failure("a1", "d2", SMS, error="late failure", now=NOW)

        with pytest.raises(InvalidTransitionError):
            _run(scenario())

    def test_dead_is_sticky(self, tracker):
        async def scenario():
            await tracker.mark_dead("a1", "d2", PUSH, reason="alert_cancelled", now=NOW)
            await tracker.mark_delivered("a1", "d2", PUSH, now=NOW)

        with pytest.raises(InvalidTransitionError):
            _run(scenario())
        assert _run(tracker.get("a1", "d2", PUSH)).state == DeliveryState.DEAD

    def test_sent_cannot_be_killed(self, tracker):
        async def scenario():
            await tracker.mark_sent("a1", "d2", PUSH, now=NOW)
            await tracker.mark_dead("a1", "d2", PUSH, reason="x", now=NOW)

        with pytest.raises(InvalidTransitionError):
            _run(scenario())

    def test_delivery_confirmation_overtaking_send_ack(self, tracker):
        async def scenario():
            delivered = await tracker.mark_delivered("a1", "d2", SMS, now=NOW)
            after_ack = await tracker.mark_sent("a1", "d2", SMS, provider_message_id="SM9", now=NOW)
            return delivered, after_ack

        delivered, after_ack = _run(scenario())
        assert delivered.state == after_ack.state == DeliveryState.DELIVERED
        assert after_ack.attempt_count == 1

    def test_unknown_delivery(self, tracker):
        with pytest.raises(NotFoundError):
            _run(tracker.mark_sent("a1", "nobody", SMS, now=NOW))


class TestRetryAccounting:

    @pytest.fixture
    def tracker(self, store):
        tracker = DeliveryTracker(store, max_attempts=2)
        _run(tracker.ensure_deliveries("a1", AUDIENCE[:1], [SMS]))
        return tracker

    def test_failure_then_retry_backoff(self, tracker):
        async def scenario():
            failed = await tracker.record_failure("a1", "d2", SMS, error="HTTP 503", now=NOW)
            retried = await tracker.schedule_retry("a1", "d2", SMS, delay_seconds=30, now=NOW)
            return failed, retried

        failed, retried = _run(scenario())
        assert failed.state == DeliveryState.FAILED
        assert failed.attempt_count == 1
        assert retried.state == DeliveryState.PENDING
        assert retried.next_attempt_at == NOW + timedelta(seconds=30)
        assert not retried.is_due(NOW)
        assert retried.is_due(NOW + timedelta(seconds=30))

    def test_exhausted_attempts_go_dead(self, tracker):
        async def scenario():
            for _ in range(2):
                await tracker.record_failure("a1", "d2", SMS, error="HTTP 503", now=NOW)
                last = await tracker.schedule_retry("a1", "d2", SMS, delay_seconds=1, now=NOW)
            return last

        last = _run(scenario())
        assert last.state == DeliveryState.DEAD
        assert last.attempt_count == 2
        assert "gave up after 2 attempts" in last.last_error

    def test_failure_after_sent_does_not_double_count(self, tracker):
        async def scenario():
            await tracker.mark_sent("a1", "d2", SMS, now=NOW)
            return await tracker.record_failure("a1", "d2", SMS, error="undelivered", now=NOW)

        assert _run(scenario()).attempt_count == 1


class TestLeases:

    @pytest.fixture
    def tracker(self, store):
        tracker = DeliveryTracker(store, max_attempts=3)
        _run(tracker.ensure_deliveries("a1", AUDIENCE[:1], [PUSH]))
        return tracker

    def test_only_one_claim_wins(self, tracker):
        async def scenario():
            return await asyncio.gather(*(
                tracker.claim("a1", "d2", PUSH, lease_seconds=15, now=NOW) for _ in range(5)
            ))

        claims = _run(scenario())
        assert sum(1 for c in claims if c is not None) == 1

    def test_expired_lease_can_be_reclaimed(self, tracker):
        async def scenario():
            first = await tracker.claim("a1", "d2", PUSH, lease_seconds=15, now=NOW)
            blocked = await tracker.claim("a1", "d2", PUSH, lease_seconds=15, now=NOW + timedelta(seconds=10))
            later = await tracker.claim("a1", "d2", PUSH, lease_seconds=15, now=NOW + timedelta(seconds=16))
            return first, blocked, later

        first, blocked, later = _run(scenario())
        assert first is not None
        assert blocked is None
        assert later is not None

    def test_sent_delivery_cannot_be_claimed(self, tracker):
        async def scenario():
            await tracker.mark_sent("a1", "d2", PUSH, now=NOW)
            return await tracker.claim("a1", "d2", PUSH, lease_seconds=15, now=NOW)

        assert _run(scenario()) is None


class TestAbandonOpen:

    def test_closes_pending_and_failed_but_not_in_flight(self, store):
        tracker = DeliveryTracker(store, max_attempts=3)

        async def scenario():
            await tracker.ensure_deliveries("a1", AUDIENCE, [PUSH])
            await tracker.mark_sent("a1", "d1", PUSH, now=NOW)
            await tracker.record_failure("a1", "d2", PUSH, error="timeout", now=NOW)
            await tracker.claim("a1", "d3", PUSH, lease_seconds=15, now=NOW)
            killed = await tracker.abandon_open("a1", reason="alert_cancelled", now=NOW + timedelta(seconds=1))
            return killed, {d.donor_id: d for d in await tracker.list_for_alert("a1")}

        killed, by_donor = _run(scenario())
        assert killed == 1
        assert by_donor["d1"].state == DeliveryState.SENT
        assert by_donor["d2"].state == DeliveryState.DEAD
        assert by_donor["d2"].last_error == "alert_cancelled"
        assert by_donor["d3"].state == DeliveryState.PENDING

    def test_abandon_single_delivery_respects_live_lease(self, store):
        tracker = DeliveryTracker(store, max_attempts=3)

        async def scenario():
            await tracker.ensure_deliveries("a1", AUDIENCE, [PUSH])
            await tracker.claim("a1", "d1", PUSH, lease_seconds=15, now=NOW)
            in_flight = await tracker.abandon("a1", "d1", PUSH, reason="alert_expired", now=NOW)
            lapsed = await tracker.abandon("a1", "d1", PUSH, reason="alert_expired", now=NOW + timedelta(seconds=16))
            idle = await tracker.abandon("a1", "d2", PUSH, reason="alert_expired", now=NOW)
            return in_flight, lapsed, idle

        in_flight, lapsed, idle = _run(scenario())
        assert in_flight.state == DeliveryState.PENDING
        assert lapsed.state == DeliveryState.DEAD
        assert lapsed.claimed_until is None
        assert idle.state == DeliveryState.DEAD
        assert idle.last_error == "alert_expired"

    def test_summary_counts(self, store, channels):
        tracker = DeliveryTracker(store, max_attempts=3)

        async def scenario():
            await tracker.ensure_deliveries("a1", AUDIENCE, channels)
            await tracker.mark_sent("a1", "d1", PUSH, now=NOW)
            return await tracker.summarize("a1")

        summary = _run(scenario())
        assert summary["total"] == 6
        assert summary["donors"] == 3
        assert summary["by_state"]["sent"] == 1
        assert summary["by_state"]["pending"] == 5
        assert summary["by_channel"]["push"] == {"sent": 1, "pending": 2}
