"""
Delivery tracker: one ``AlertDelivery`` per (alert, donor, channel).

Creation is create-if-absent on the tuple's key, so materialising the same
alert twice returns the records from the first run.  Every later write goes
through ``_cas``: read the record with its version, let a mutator validate the
move against ``DELIVERY_TRANSITIONS`` and build the new value, then
``put_if_version``.  Losing the race means re-reading and re-validating, so a
``delivered`` callback can never overwrite a ``dead`` record (or the reverse).
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from donorlink.config import get_settings
from donorlink.db.record_store import RecordStore
from donorlink.exceptions import ConcurrentUpdateError, InvalidTransitionError, NotFoundError
from donorlink.models.alert_delivery import (
    DELIVERY_TRANSITIONS,
    AlertDelivery,
    DeliveryChannel,
    DeliveryState,
    delivery_key,
)
from donorlink.models.base import utcnow
from donorlink.models.donor import Donor

logger = logging.getLogger(__name__)

DeliveryListener = Callable[[AlertDelivery], Awaitable[None]]

# A mutator returns the new record, or None to leave the stored one untouched.
Mutator = Callable[[AlertDelivery], "AlertDelivery | None"]

MAX_CAS_RETRIES = 8


def _check(current: AlertDelivery, new_state: DeliveryState) -> None:
    if new_state not in DELIVERY_TRANSITIONS[current.state]:
        raise InvalidTransitionError(
            f"Delivery {current.key}", current.state.value, new_state.value,
        )


class DeliveryTracker:

    def __init__(
        self,
        store: RecordStore,
        *,
        max_attempts: int | None = None,
        on_change: DeliveryListener | None = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts or get_settings().DISPATCH_MAX_ATTEMPTS
        self._on_change = on_change

    # ------------------------------------------------------------------
    # Creation / reads
    # ------------------------------------------------------------------

    async def ensure_deliveries(
        self,
        alert_id: str,
        audience: Iterable[Donor],
        channels: Iterable[DeliveryChannel | str],
    ) -> list[AlertDelivery]:
        """Materialise (or rehydrate) the audience x channels cross-product.

        Existing records are returned unchanged; missing ones are created in
        ``pending``.  Output order is donor id, then channel order as given.
        """
        channel_list = list(dict.fromkeys(DeliveryChannel(c) for c in channels))
        donor_ids = sorted({donor.id for donor in audience})

        deliveries: list[AlertDelivery] = []
        created = 0
        for donor_id in donor_ids:
            for channel in channel_list:
                record, is_new = await self._create_if_absent(alert_id, donor_id, channel)
                deliveries.append(record)
                created += is_new

        logger.info(
            "Alert %s deliveries: %d created, %d already present (%d donors x %d channels)",
            alert_id, created, len(deliveries) - created, len(donor_ids), len(channel_list),
        )
        return deliveries

    async def _create_if_absent(
        self, alert_id: str, donor_id: str, channel: DeliveryChannel,
    ) -> tuple[AlertDelivery, bool]:
        fresh = AlertDelivery.new(alert_id, donor_id, channel)
        for _ in range(MAX_CAS_RETRIES):
            if await self.store.put_if_version(fresh.key, fresh.to_store(), 0):
                await self._notify(fresh)
                return fresh, True
            existing = await self.store.get(fresh.key)
            if existing is not None:
                return AlertDelivery.from_store(existing), False
        raise ConcurrentUpdateError(f"Could not create or read delivery {fresh.key}")

    async def get(self, alert_id: str, donor_id: str, channel: DeliveryChannel | str) -> AlertDelivery:
        value = await self.store.get(delivery_key(alert_id, donor_id, channel))
        if value is None:
            raise NotFoundError("Delivery", delivery_key(alert_id, donor_id, channel))
        return AlertDelivery.from_store(value)

    async def list_for_alert(self, alert_id: str) -> list[AlertDelivery]:
        values = await self.store.scan_by_prefix(AlertDelivery.prefix_for_alert(alert_id))
        return [AlertDelivery.from_store(v) for v in values]

    async def summarize(
        self, alert_id: str, deliveries: list[AlertDelivery] | None = None,
    ) -> dict[str, Any]:
        if deliveries is None:
            deliveries = await self.list_for_alert(alert_id)
        by_state = Counter(d.state.value for d in deliveries)
        by_channel: dict[str, Counter] = {}
        for d in deliveries:
            by_channel.setdefault(d.channel.value, Counter())[d.state.value] += 1
        return {
            "alert_id": alert_id,
            "total": len(deliveries),
            "donors": len({d.donor_id for d in deliveries}),
            "by_state": {state.value: by_state.get(state.value, 0) for state in DeliveryState},
            "by_channel": {ch: dict(counts) for ch, counts in by_channel.items()},
            "terminal": sum(1 for d in deliveries if d.is_terminal),
        }

    # ------------------------------------------------------------------
    # Compare-and-set core
    # ------------------------------------------------------------------

    async def _cas(
        self, alert_id: str, donor_id: str, channel: DeliveryChannel | str, mutate: Mutator,
    ) -> tuple[AlertDelivery, bool]:
        key = delivery_key(alert_id, donor_id, channel)
        for _ in range(MAX_CAS_RETRIES):
            found = await self.store.get_versioned(key)
            if found is None:
                raise NotFoundError("Delivery", key)
            value, version = found
            current = AlertDelivery.from_store(value)

            updated = mutate(current)
            if updated is None:
                return current, False

            if await self.store.put_if_version(key, updated.to_store(), version):
                await self._notify(updated)
                return updated, True
            logger.debug("CAS conflict on %s (version %d), retrying", key, version)
        raise ConcurrentUpdateError(f"Gave up updating {key} after {MAX_CAS_RETRIES} conflicts")

    async def _notify(self, delivery: AlertDelivery) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(delivery)
        except Exception:
            logger.exception("Delivery listener failed for %s", delivery.key)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def claim(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> AlertDelivery | None:
        """Take a send lease on a due pending delivery.

        Returns the leased record, or None when the delivery is not due
        (already sent, leased by another dispatcher, or still backing off).
        """
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if not current.is_due(now):
                return None
            return current.model_copy(update={
                "claimed_until": now + timedelta(seconds=lease_seconds),
                "updated_at": now,
            })

        record, changed = await self._cas(alert_id, donor_id, channel, mutate)
        return record if changed else None

    async def mark_sent(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        provider_message_id: str | None = None,
        now: datetime | None = None,
    ) -> AlertDelivery:
        """pending -> sent: the gateway accepted the message."""
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state == DeliveryState.DELIVERED:
                # confirmation already arrived; only account for the attempt
                return current.model_copy(update={
                    "attempt_count": current.attempt_count + 1,
                    "last_attempt_at": now,
                    "provider_message_id": provider_message_id or current.provider_message_id,
                    "claimed_until": None,
                    "updated_at": now,
                })
            if current.state == DeliveryState.SENT:
                return None
            _check(current, DeliveryState.SENT)
            return current.model_copy(update={
                "state": DeliveryState.SENT,
                "attempt_count": current.attempt_count + 1,
                "last_attempt_at": now,
                "sent_at": now,
                "next_attempt_at": None,
                "claimed_until": None,
                "last_error": None,
                "provider_message_id": provider_message_id,
                "updated_at": now,
            })

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def mark_delivered(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        now: datetime | None = None,
    ) -> AlertDelivery:
        """sent -> delivered (or pending -> delivered when the callback wins the race)."""
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state == DeliveryState.DELIVERED:
                return None
            _check(current, DeliveryState.DELIVERED)
            return current.model_copy(update={
                "state": DeliveryState.DELIVERED,
                "delivered_at": now,
                "sent_at": current.sent_at or now,
                "next_attempt_at": None,
                "updated_at": now,
            })

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def record_failure(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        error: str,
        now: datetime | None = None,
    ) -> AlertDelivery:
        """pending -> failed (send attempt rejected) or sent -> failed (provider callback).

        A send attempt from ``pending`` counts towards ``attempt_count``; a
        failure reported for an already ``sent`` message was counted at send.
        """
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state == DeliveryState.FAILED:
                return None
            _check(current, DeliveryState.FAILED)
            attempts = current.attempt_count
            if current.state == DeliveryState.PENDING:
                attempts += 1
            return current.model_copy(update={
                "state": DeliveryState.FAILED,
                "attempt_count": attempts,
                "last_attempt_at": now if current.state == DeliveryState.PENDING else current.last_attempt_at,
                "last_error": error,
                "claimed_until": None,
                "updated_at": now,
            })

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def schedule_retry(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        delay_seconds: float,
        now: datetime | None = None,
    ) -> AlertDelivery:
        """failed -> pending with a backoff, or failed -> dead once attempts are exhausted."""
        now = now or utcnow()
        max_attempts = self.max_attempts

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state != DeliveryState.FAILED:
                # someone else already resolved this failure
                return None
            if current.attempt_count >= max_attempts:
                return current.model_copy(update={
                    "state": DeliveryState.DEAD,
                    "last_error": f"{current.last_error or 'failed'} (gave up after {current.attempt_count} attempts)",
                    "next_attempt_at": None,
                    "updated_at": now,
                })
            return current.model_copy(update={
                "state": DeliveryState.PENDING,
                "next_attempt_at": now + timedelta(seconds=delay_seconds),
                "updated_at": now,
            })

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def mark_dead(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        reason: str,
        now: datetime | None = None,
        count_attempt: bool = False,
    ) -> AlertDelivery:
        """pending/failed -> dead. Terminal: no further automatic retries."""
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state == DeliveryState.DEAD:
                return None
            _check(current, DeliveryState.DEAD)
            update: dict[str, Any] = {
                "state": DeliveryState.DEAD,
                "last_error": reason,
                "next_attempt_at": None,
                "claimed_until": None,
                "updated_at": now,
            }
            if count_attempt:
                update["attempt_count"] = current.attempt_count + 1
                update["last_attempt_at"] = now
            return current.model_copy(update=update)

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def abandon(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        *,
        reason: str,
        now: datetime | None = None,
    ) -> AlertDelivery:
        """Kill one delivery if it is still unsent and not in flight; otherwise leave it."""
        now = now or utcnow()

        def mutate(current: AlertDelivery) -> AlertDelivery | None:
            if current.state not in (DeliveryState.PENDING, DeliveryState.FAILED):
                return None
            if current.claimed_until is not None and current.claimed_until > now:
                return None
            return current.model_copy(update={
                "state": DeliveryState.DEAD,
                "last_error": reason,
                "next_attempt_at": None,
                "claimed_until": None,
                "updated_at": now,
            })

        record, _ = await self._cas(alert_id, donor_id, channel, mutate)
        return record

    async def abandon_open(self, alert_id: str, *, reason: str, now: datetime | None = None) -> int:
        """Kill every delivery of an alert that has not been sent and is not in flight.

        Used when the alert is cancelled or expires.  Leased (in-flight)
        deliveries are left alone so their gateway call can finish and record
        its outcome normally.
        """
        now = now or utcnow()
        killed = 0
        for delivery in await self.list_for_alert(alert_id):
            if delivery.state not in (DeliveryState.PENDING, DeliveryState.FAILED):
                continue
            record = await self.abandon(
                delivery.alert_id, delivery.donor_id, delivery.channel, reason=reason, now=now,
            )
            if record.state == DeliveryState.DEAD:
                killed += 1
        logger.info("Alert %s: %d open deliveries marked dead (%s)", alert_id, killed, reason)
        return killed
