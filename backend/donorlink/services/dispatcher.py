"""
Alert dispatcher: fans an Active alert out to its audience.

``dispatch`` materialises the audience x channels delivery records first and
only then issues sends, so a crash mid-fan-out leaves every pair observable
as ``pending`` and a second dispatch (or the retry sweep) picks up where the
first stopped.  Each send:

1. waits for a slot on the concurrency semaphore;
2. re-reads the alert and stops if it is no longer Active and unexpired;
3. takes a send lease on the delivery (``DeliveryTracker.claim``);
4. calls the gateway under ``asyncio.wait_for``;
5. records the outcome: accepted -> sent, permanent rejection -> dead,
   anything else -> failed, then pending again after an exponential backoff
   (or dead once ``DISPATCH_MAX_ATTEMPTS`` is reached).

Delivery confirmations arrive later through ``handle_delivery_result``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from donorlink.config import get_settings
from donorlink.db.record_store import RecordStore
from donorlink.exceptions import (
    AlertExpiredError,
    AlertNotActiveError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from donorlink.models.alert import Alert, AlertState
from donorlink.models.alert_delivery import AlertDelivery, DeliveryChannel, DeliveryState
from donorlink.models.base import utcnow
from donorlink.notifications.gateway import AlertPayload, DonorContact, GatewayResult, NotificationGateway
from donorlink.services import alert_service, directory_service
from donorlink.services.audience_service import resolve_audience
from donorlink.services.delivery_tracker import DeliveryTracker

logger = logging.getLogger(__name__)

RetryScheduler = Callable[[AlertDelivery, float], None]

# Lease = gateway timeout plus this margin for the outcome write.
LEASE_MARGIN_SECONDS = 5.0


@dataclass
class DispatchResult:
    alert_id: str
    audience_size: int
    deliveries: list[AlertDelivery] = field(default_factory=list)
    attempted: int = 0

    def to_dict(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for d in self.deliveries:
            counts[d.state.value] = counts.get(d.state.value, 0) + 1
        return {
            "alert_id": self.alert_id,
            "audience_size": self.audience_size,
            "delivery_count": len(self.deliveries),
            "attempted": self.attempted,
            "by_state": counts,
        }


def backoff_delay(attempt_count: int, base: float, maximum: float) -> float:
    """``min(base * 2^(attempt-1), max)``; the first retry waits *base* seconds."""
    exponent = max(attempt_count, 1) - 1
    # cap the exponent so huge attempt counts cannot overflow the float
    return min(base * (2 ** min(exponent, 32)), maximum)


def closing_reason(alert: Alert, now: datetime) -> Optional[str]:
    """Why no new sends may happen for *alert*, or None if it is sendable."""
    if alert.state == AlertState.CANCELLED:
        return "alert_cancelled"
    if alert.state == AlertState.EXPIRED or alert.is_expired(now):
        return "alert_expired"
    if alert.state != AlertState.ACTIVE:
        return f"alert_{alert.state.value}"
    return None


class AlertDispatcher:

    def __init__(
        self,
        store: RecordStore,
        gateway: NotificationGateway,
        tracker: DeliveryTracker | None = None,
        *,
        concurrency: int = 20,
        gateway_timeout: float = 10.0,
        backoff_base: float = 30.0,
        backoff_max: float = 3600.0,
        retry_scheduler: RetryScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.gateway = gateway
        self.tracker = tracker or DeliveryTracker(store)
        self.gateway_timeout = gateway_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._retry_scheduler = retry_scheduler
        self._clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch(self, alert_id: str, *, hospital_id: str | None = None) -> DispatchResult:
        """Create the delivery records for an Active alert and issue the first sends.

        Raises ``NotFoundError``, ``AlertNotActiveError`` or
        ``AlertExpiredError`` before any record is written.
        """
        alert = await alert_service.get_alert(self.store, alert_id, hospital_id=hospital_id)
        now = self._clock()
        if alert.state == AlertState.EXPIRED or (alert.state == AlertState.ACTIVE and alert.is_expired(now)):
            raise AlertExpiredError(alert.id, alert.state.value, f"Alert {alert.id} has expired")
        if alert.state != AlertState.ACTIVE:
            raise AlertNotActiveError(alert.id, alert.state.value)

        audience = await resolve_audience(self.store, alert)
        channels = alert.channels or [DeliveryChannel(c) for c in get_settings().DISPATCH_CHANNELS]
        deliveries = await self.tracker.ensure_deliveries(alert.id, audience, channels)

        contacts = {donor.id: DonorContact.from_donor(donor) for donor in audience}
        payload = AlertPayload.from_alert(alert)
        due = [d for d in deliveries if d.is_due(now)]
        outcomes = await asyncio.gather(*(
            self._attempt(d, contacts[d.donor_id], payload) for d in due
        ))
        attempted = sum(1 for outcome in outcomes if outcome is not None)

        latest = {d.key: d for d in await self.tracker.list_for_alert(alert.id)}
        deliveries = [latest.get(d.key, d) for d in deliveries]

        logger.info(
            "Dispatched alert %s: audience=%d deliveries=%d attempted=%d",
            alert.id, len(audience), len(deliveries), attempted,
        )
        return DispatchResult(
            alert_id=alert.id,
            audience_size=len(audience),
            deliveries=deliveries,
            attempted=attempted,
        )

    async def _sendable_alert(self, alert_id: str) -> tuple[Alert | None, str | None]:
        try:
            alert = await alert_service.get_alert(self.store, alert_id)
        except NotFoundError:
            return None, "alert_missing"
        return alert, closing_reason(alert, self._clock())

    async def _attempt(
        self, delivery: AlertDelivery, contact: DonorContact, payload: AlertPayload,
    ) -> AlertDelivery | None:
        """One send for one delivery. Returns None when nothing was sent."""
        async with self._semaphore:
            _, reason = await self._sendable_alert(delivery.alert_id)
            if reason is not None:
                logger.info("Not sending %s: %s", delivery.key, reason)
                await self.tracker.abandon(
                    delivery.alert_id, delivery.donor_id, delivery.channel,
                    reason=reason, now=self._clock(),
                )
                return None

            claimed = await self.tracker.claim(
                delivery.alert_id, delivery.donor_id, delivery.channel,
                lease_seconds=self.gateway_timeout + LEASE_MARGIN_SECONDS,
                now=self._clock(),
            )
            if claimed is None:
                return None

            try:
                result = await asyncio.wait_for(
                    self.gateway.send(claimed.channel, contact, payload),
                    timeout=self.gateway_timeout,
                )
            except asyncio.TimeoutError:
                result = GatewayResult.rejected(
                    f"gateway timeout after {self.gateway_timeout:g}s", permanent=False,
                )
            except Exception as exc:
                logger.exception("Gateway call failed for %s", claimed.key)
                result = GatewayResult.rejected(f"gateway error: {exc}", permanent=False)

            return await self._record_outcome(claimed, result)

    async def _record_outcome(self, delivery: AlertDelivery, result: GatewayResult) -> AlertDelivery:
        now = self._clock()
        args = (delivery.alert_id, delivery.donor_id, delivery.channel)
        try:
            if result.accepted:
                return await self.tracker.mark_sent(
                    *args, provider_message_id=result.provider_message_id, now=now,
                )
            if result.permanent:
                logger.warning("Permanent failure for %s: %s", delivery.key, result.reason)
                return await self.tracker.mark_dead(
                    *args, reason=result.reason or "rejected", now=now, count_attempt=True,
                )
            failed = await self.tracker.record_failure(*args, error=result.reason or "rejected", now=now)
        except InvalidTransitionError as exc:
            # the record moved on while the call was in flight
            logger.warning("Outcome for %s not recorded: %s", delivery.key, exc)
            return await self.tracker.get(*args)
        return await self._schedule_retry(failed)

    async def _schedule_retry(self, delivery: AlertDelivery) -> AlertDelivery:
        if delivery.state != DeliveryState.FAILED:
            return delivery
        args = (delivery.alert_id, delivery.donor_id, delivery.channel)
        now = self._clock()

        _, reason = await self._sendable_alert(delivery.alert_id)
        if reason is not None:
            return await self.tracker.mark_dead(*args, reason=reason, now=now)

        delay = self.backoff_delay(delivery.attempt_count)
        record = await self.tracker.schedule_retry(*args, delay_seconds=delay, now=now)
        if record.state == DeliveryState.PENDING:
            logger.info(
                "Retry %d for %s in %.0fs (%s)",
                record.attempt_count + 1, record.key, delay, record.last_error,
            )
            if self._retry_scheduler is not None:
                try:
                    self._retry_scheduler(record, delay)
                except Exception:
                    # retry_due picks the delivery up on its next sweep
                    logger.exception("Could not schedule retry for %s", record.key)
        else:
            logger.warning("Giving up on %s: %s", record.key, record.last_error)
        return record

    def backoff_delay(self, attempt_count: int) -> float:
        return backoff_delay(attempt_count, self.backoff_base, self.backoff_max)

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    async def retry_delivery(
        self, alert_id: str, donor_id: str, channel: DeliveryChannel | str,
    ) -> AlertDelivery:
        """Run one scheduled retry for a single delivery tuple."""
        delivery = await self.tracker.get(alert_id, donor_id, channel)
        if delivery.state == DeliveryState.FAILED:
            return await self._schedule_retry(delivery)
        if delivery.state != DeliveryState.PENDING:
            return delivery

        alert, reason = await self._sendable_alert(alert_id)
        if reason is not None:
            return await self.tracker.mark_dead(alert_id, donor_id, channel, reason=reason, now=self._clock())
        if not delivery.is_due(self._clock()):
            return delivery

        try:
            donor = await directory_service.get_donor(self.store, donor_id)
        except NotFoundError:
            return await self.tracker.mark_dead(
                alert_id, donor_id, channel, reason="donor_not_found", now=self._clock(),
            )

        outcome = await self._attempt(delivery, DonorContact.from_donor(donor), AlertPayload.from_alert(alert))
        return outcome or await self.tracker.get(alert_id, donor_id, channel)

    async def retry_due(self, now: datetime | None = None) -> int:
        """Sweep Active alerts for deliveries whose backoff has elapsed.

        Also re-schedules deliveries stranded in ``failed`` (a worker died
        between recording the failure and scheduling the retry).  Returns the
        number of sends issued.
        """
        now = now or self._clock()
        attempted = 0
        for alert in await alert_service.list_alerts(self.store, state=AlertState.ACTIVE):
            if closing_reason(alert, now) is not None:
                continue
            payload = AlertPayload.from_alert(alert)
            tasks = []
            for delivery in await self.tracker.list_for_alert(alert.id):
                if delivery.state == DeliveryState.FAILED:
                    await self._schedule_retry(delivery)
                    continue
                if not delivery.is_due(now):
                    continue
                try:
                    donor = await directory_service.get_donor(self.store, delivery.donor_id)
                except NotFoundError:
                    await self.tracker.mark_dead(
                        delivery.alert_id, delivery.donor_id, delivery.channel,
                        reason="donor_not_found", now=now,
                    )
                    continue
                tasks.append(self._attempt(delivery, DonorContact.from_donor(donor), payload))
            outcomes = await asyncio.gather(*tasks)
            attempted += sum(1 for outcome in outcomes if outcome is not None)
        if attempted:
            logger.info("Retry sweep issued %d sends", attempted)
        return attempted

    # ------------------------------------------------------------------
    # Gateway callbacks
    # ------------------------------------------------------------------

    async def handle_delivery_result(
        self,
        alert_id: str,
        donor_id: str,
        channel: DeliveryChannel | str,
        outcome: DeliveryState | str,
        *,
        reason: str | None = None,
        permanent: bool = False,
    ) -> AlertDelivery:
        """Apply a provider's final status for a delivery.

        ``delivered`` is terminal.  ``failed`` goes through the same retry
        policy as a rejected send unless *permanent*.  Repeating a callback
        for the state the record is already in is a no-op.
        """
        try:
            outcome = DeliveryState(outcome)
        except ValueError:
            raise InvalidInputError(f"Unknown delivery outcome: {outcome!r}") from None
        args = (alert_id, donor_id, channel)
        now = self._clock()

        if outcome == DeliveryState.DELIVERED:
            record = await self.tracker.mark_delivered(*args, now=now)
            logger.info("Delivery %s confirmed", record.key)
            return record

        if outcome == DeliveryState.FAILED:
            failed = await self.tracker.record_failure(*args, error=reason or "delivery failed", now=now)
            if permanent and failed.state == DeliveryState.FAILED:
                return await self.tracker.mark_dead(*args, reason=reason or "delivery failed", now=now)
            return await self._schedule_retry(failed)

        raise InvalidInputError(f"Callbacks may only report delivered or failed, not {outcome.value}")


def build_dispatcher(
    store: RecordStore,
    gateway: NotificationGateway | None = None,
    *,
    retry_scheduler: RetryScheduler | None = None,
    broadcast: bool = True,
) -> AlertDispatcher:
    """Dispatcher wired from settings, with Celery retries and dashboard updates."""
    settings = get_settings()
    if gateway is None:
        from donorlink.notifications.gateway import get_gateway
        gateway = get_gateway()
    if retry_scheduler is None:
        from tasks.dispatch_tasks import enqueue_retry
        retry_scheduler = enqueue_retry

    on_change = None
    if broadcast:
        from donorlink.api.websocket.handler import broadcast_delivery_update

        async def on_change(delivery: AlertDelivery) -> None:
            await broadcast_delivery_update(delivery.alert_id, delivery.to_store())

    tracker = DeliveryTracker(store, max_attempts=settings.DISPATCH_MAX_ATTEMPTS, on_change=on_change)
    return AlertDispatcher(
        store,
        gateway,
        tracker,
        concurrency=settings.DISPATCH_CONCURRENCY,
        gateway_timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        backoff_base=settings.RETRY_BACKOFF_BASE_SECONDS,
        backoff_max=settings.RETRY_BACKOFF_MAX_SECONDS,
        retry_scheduler=retry_scheduler,
    )
