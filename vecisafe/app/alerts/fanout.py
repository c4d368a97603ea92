"""
fanout.py — Turns one stored alert into per-recipient push deliveries.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  dispatch(alert)    │  GeoIndex.query(alert.location, radius_m)
    │                     │  minus the reporter's own session
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  Deduplicate        │  Skip recipients that already hold a
    │                     │  non-exhausted intent for this alert
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  Schedule           │  One asyncio task per intent; returns the
    │                     │  created intents without waiting
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  Deliver with retry │  Bounded by a semaphore (worker slots);
    │                     │  slot released while backing off
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    delay(k) = base × factor^(k − 1)      (optionally capped)

    Defaults (base=1s, factor=2, 5 attempts):
        attempt 1 fails → wait 1s
        attempt 2 fails → wait 2s
        attempt 3 fails → wait 4s
        attempt 4 fails → wait 8s
        attempt 5 fails → EXHAUSTED, no further attempt

SENT is sticky: a sent intent is never attempted again, and a replayed
dispatch of the same alert creates nothing for that recipient.

Cancelling (``cancel``/``aclose``) stops in-flight tasks but keeps their
intents; ``resume`` or a replayed ``dispatch`` picks them up again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from vecisafe.app.alerts.channels.push import PushTransport
from vecisafe.app.alerts.models import Alert, DeliveryIntent, DeliveryStatus
from vecisafe.app.core.config import Settings, settings as default_settings
from vecisafe.app.spatial.geo_index import GeoIndex

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Delivery retry parameters."""
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "RetryConfig":
        return cls(
            max_attempts=config.FANOUT_MAX_ATTEMPTS,
            backoff_base_seconds=config.FANOUT_BACKOFF_BASE_SECONDS,
            backoff_factor=config.FANOUT_BACKOFF_FACTOR,
            backoff_max_seconds=config.FANOUT_BACKOFF_MAX_SECONDS,
        )


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay before the attempt following ``attempt`` (1-based).

    >>> compute_backoff(RetryConfig(), 1), compute_backoff(RetryConfig(), 4)
    (1.0, 8.0)
    """
    delay = config.backoff_base_seconds * (config.backoff_factor ** (attempt - 1))
    if config.backoff_max_seconds is not None:
        delay = min(delay, config.backoff_max_seconds)
    return delay


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class FanoutDispatcher:
    """
    Creates and drives delivery intents for stored alerts.

    Parameters
    ----------
    geo_index : GeoIndex
        Subscriber locations to fan out to.
    transport : PushTransport
        ``send(recipient_session_id, summary) → bool`` primitive.
    radius_m : float
        Notification radius around the alert location.
    retry : RetryConfig | None
        Attempt cap and backoff; defaults from settings.
    max_workers : int
        Concurrent ``send`` calls across all alerts.
    sleep : callable
        Awaitable used for backoff; tests pass a no-op.
    """

    def __init__(
        self,
        geo_index: GeoIndex,
        transport: PushTransport,
        *,
        radius_m: float = default_settings.FANOUT_RADIUS_M,
        retry: Optional[RetryConfig] = None,
        max_workers: int = default_settings.FANOUT_WORKERS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.geo_index = geo_index
        self.transport = transport
        self.radius_m = radius_m
        self.retry = retry or RetryConfig.from_settings()
        self.max_workers = max_workers
        self._sleep = sleep
        self._slots = asyncio.Semaphore(max_workers)

        # Latest intent per (alert_id, recipient); exhausted ones may be superseded
        self._current: Dict[Tuple[str, str], DeliveryIntent] = {}
        # Every intent ever created, per alert
        self._ledger: Dict[str, List[DeliveryIntent]] = defaultdict(list)
        self._alerts: Dict[str, Alert] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}

    # ── Dispatch ──

    async def dispatch(self, alert: Alert) -> List[DeliveryIntent]:
        """
        Create intents for every subscriber near ``alert`` and schedule
        their delivery. Returns the newly created intents; delivery
        continues in the background.
        """
        if alert.id is None:
            raise ValueError("Alert must be stored (have an id) before dispatch")

        self._alerts[alert.id] = alert
        recipients = self.geo_index.query(alert.location, self.radius_m)
        recipients.discard(alert.reporter_session_id)

        created: List[DeliveryIntent] = []
        for recipient in sorted(recipients):
            existing = self._current.get((alert.id, recipient))
            if existing is not None and existing.status != DeliveryStatus.EXHAUSTED:
                continue
            intent = DeliveryIntent(alert_id=alert.id, recipient_session_id=recipient)
            self._current[intent.key] = intent
            self._ledger[alert.id].append(intent)
            created.append(intent)

        rescheduled = self._schedule_pending(alert.id)

        logger.info(
            "Fanout %s: %d in radius (%.0f m), %d new intents, %d scheduled",
            alert.id, len(recipients), self.radius_m, len(created), rescheduled,
            extra={
                "alert_id": alert.id,
                "recipient_count": len(recipients),
                "radius_m": self.radius_m,
            },
        )
        return created

    def _schedule_pending(self, alert_id: str) -> int:
        alert = self._alerts[alert_id]
        scheduled = 0
        for intent in self._ledger.get(alert_id, []):
            if intent.is_terminal or intent.intent_id in self._in_flight:
                continue
            task = asyncio.get_running_loop().create_task(
                self._deliver(intent, alert), name=f"fanout-{intent.intent_id}",
            )
            self._in_flight[intent.intent_id] = task
            task.add_done_callback(self._make_done_callback(intent))
            scheduled += 1
        return scheduled

    def _make_done_callback(self, intent: DeliveryIntent) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            self._in_flight.pop(intent.intent_id, None)
            if task.cancelled():
                logger.info(
                    "Delivery %s → %s cancelled at attempt %d (%s)",
                    intent.alert_id, intent.recipient_session_id,
                    intent.attempt, intent.status.value,
                    extra={"alert_id": intent.alert_id, "recipient": intent.recipient_session_id},
                )
            elif task.exception() is not None:
                logger.error(
                    "Delivery task for %s → %s crashed: %s",
                    intent.alert_id, intent.recipient_session_id, task.exception(),
                )
        return _done

    # ── Delivery ──

    async def _attempt(self, intent: DeliveryIntent, summary: dict) -> Tuple[bool, Optional[str]]:
        async with self._slots:
            try:
                accepted = await self.transport.send(intent.recipient_session_id, summary)
            except Exception as exc:
                return False, f"{type(exc).__name__}: {exc}"
        if accepted:
            return True, None
        return False, "transport rejected delivery"

    async def _deliver(self, intent: DeliveryIntent, alert: Alert) -> None:
        summary = alert.summary()
        max_attempts = self.retry.max_attempts

        while not intent.is_terminal:
            if intent.attempt >= max_attempts:
                intent.mark(DeliveryStatus.EXHAUSTED, intent.last_error)
                break

            intent.attempt += 1
            ok, error = await self._attempt(intent, summary)

            if ok:
                intent.mark(DeliveryStatus.SENT)
                logger.info(
                    "Delivered %s → %s on attempt %d",
                    intent.alert_id, intent.recipient_session_id, intent.attempt,
                    extra={
                        "alert_id": intent.alert_id,
                        "recipient": intent.recipient_session_id,
                        "attempt": intent.attempt,
                        "status": "sent",
                    },
                )
                return

            intent.mark(DeliveryStatus.FAILED, error)
            if intent.attempt >= max_attempts:
                intent.mark(DeliveryStatus.EXHAUSTED, error)
                break

            delay = compute_backoff(self.retry, intent.attempt)
            logger.info(
                "Retry %d/%d for %s → %s in %.1fs (%s)",
                intent.attempt, max_attempts,
                intent.alert_id, intent.recipient_session_id, delay, error,
            )
            await self._sleep(delay)

        if intent.status == DeliveryStatus.EXHAUSTED:
            logger.warning(
                "Delivery %s → %s exhausted after %d attempts: %s",
                intent.alert_id, intent.recipient_session_id,
                intent.attempt, intent.last_error,
                extra={
                    "alert_id": intent.alert_id,
                    "recipient": intent.recipient_session_id,
                    "attempt": intent.attempt,
                    "status": "exhausted",
                },
            )

    # ── Completion & cancellation ──

    def _tasks_for(self, alert_id: str) -> List[asyncio.Task]:
        return [
            self._in_flight[i.intent_id]
            for i in self._ledger.get(alert_id, [])
            if i.intent_id in self._in_flight
        ]

    def is_complete(self, alert_id: str) -> bool:
        """True once every intent of the alert is SENT or EXHAUSTED."""
        return all(i.is_terminal for i in self._ledger.get(alert_id, []))

    async def wait(self, alert_id: str, timeout: Optional[float] = None) -> bool:
        """
        Wait for the alert's deliveries without cancelling them.

        Returns True if every intent reached a terminal state.
        """
        tasks = self._tasks_for(alert_id)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        return self.is_complete(alert_id)

    async def join(self) -> None:
        """Wait for every in-flight delivery."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def cancel(self, alert_id: str) -> int:
        """Stop in-flight deliveries for one alert; intents are kept."""
        tasks = self._tasks_for(alert_id)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    async def resume(self) -> int:
        """Reschedule every non-terminal intent that is not in flight."""
        scheduled = sum(self._schedule_pending(alert_id) for alert_id in list(self._ledger))
        if scheduled:
            logger.info("Resumed %d pending deliveries", scheduled)
        return scheduled

    async def aclose(self) -> None:
        """Cancel all in-flight deliveries (shutdown)."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Observability ──

    def intents_for(self, alert_id: str) -> List[DeliveryIntent]:
        return list(self._ledger.get(alert_id, []))

    def exhausted(self) -> List[DeliveryIntent]:
        return [
            intent
            for intents in self._ledger.values()
            for intent in intents
            if intent.status == DeliveryStatus.EXHAUSTED
        ]

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DeliveryStatus}
        for intents in self._ledger.values():
            for intent in intents:
                counts[intent.status.value] += 1
        counts["in_flight"] = len(self._in_flight)
        counts["alerts"] = len(self._ledger)
        return counts
