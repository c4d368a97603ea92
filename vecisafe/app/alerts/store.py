"""
store.py — Append-only, time-ordered ledger of incident reports.

Ordering invariant: every read returns alerts by descending
``created_at``, ties broken by descending ``id``. Alert ids are
``ALR-<epoch ms>-<sequence>`` so they sort lexicographically in append
order within one store.

The in-memory ledger keeps alerts in ascending (created_at, id) order in
a plain list and uses ``bisect`` for inserts and window lookups. Each
append, amend and read runs under one lock, so a reader never sees a
partially written alert.
"""

from __future__ import annotations

import bisect
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple

from vecisafe.app.alerts.models import AMENDABLE_FIELDS, Alert, coerce_classification
from vecisafe.app.core.errors import ForbiddenError, NotFoundError, ValidationError
from vecisafe.app.spatial.geo import validate_lat_lon

logger = logging.getLogger(__name__)

# Sorts after any alert id that shares the same created_at
_ID_CEILING = "\U0010ffff"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AlertStore(ABC):
    """Ledger contract used by AlertService."""

    @abstractmethod
    async def append(self, alert: Alert) -> Alert:
        """Persist a new alert, assigning ``id``/``created_at`` when absent."""

    @abstractmethod
    async def get(self, alert_id: str) -> Alert:
        ...

    @abstractmethod
    async def recent(self, n: int) -> List[Alert]:
        """Most recent ``n`` alerts, newest first."""

    @abstractmethod
    async def window(self, since: datetime, until: datetime) -> List[Alert]:
        """Alerts with since ≤ created_at ≤ until, newest first."""

    @abstractmethod
    async def amend(
        self,
        alert_id: str,
        requester_session_id: str,
        updates: Mapping[str, Any],
    ) -> Alert:
        """Change classification/details; only the original reporter may."""

    @abstractmethod
    async def count(self) -> int:
        ...


class InMemoryAlertStore(AlertStore):
    """Process-local ledger."""

    def __init__(self) -> None:
        self._alerts: List[Alert] = []
        self._keys: List[Tuple[datetime, str]] = []
        self._by_id: Dict[str, Alert] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self, created_at: datetime) -> str:
        millis = int(created_at.timestamp() * 1000)
        return f"ALR-{millis:013d}-{next(self._seq):06d}"

    async def append(self, alert: Alert) -> Alert:
        validate_lat_lon(alert.location.latitude, alert.location.longitude)

        with self._lock:
            created_at = as_utc(alert.created_at) if alert.created_at else datetime.now(timezone.utc)
            alert_id = alert.id or self._next_id(created_at)
            if alert_id in self._by_id:
                raise ValidationError(
                    f"Alert id {alert_id} already exists", field="id",
                )

            stored = replace(alert, id=alert_id, created_at=created_at)
            key = stored.sort_key
            pos = bisect.bisect_right(self._keys, key)
            self._keys.insert(pos, key)
            self._alerts.insert(pos, stored)
            self._by_id[alert_id] = stored

        logger.info(
            "Alert %s appended [%s] at (%.5f, %.5f)",
            stored.id, stored.classification.value,
            stored.location.latitude, stored.location.longitude,
            extra={"alert_id": stored.id},
        )
        return stored

    async def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._by_id.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    async def recent(self, n: int) -> List[Alert]:
        if n < 0:
            raise ValidationError(f"n must be >= 0, got {n}", field="n")
        if n == 0:
            return []
        with self._lock:
            return self._alerts[-n:][::-1]

    async def window(self, since: datetime, until: datetime) -> List[Alert]:
        since, until = as_utc(since), as_utc(until)
        if since > until:
            raise ValidationError(
                "'since' must not be later than 'until'", field="since",
            )
        with self._lock:
            lo = bisect.bisect_left(self._keys, (since, ""))
            hi = bisect.bisect_right(self._keys, (until, _ID_CEILING))
            return self._alerts[lo:hi][::-1]

    async def amend(
        self,
        alert_id: str,
        requester_session_id: str,
        updates: Mapping[str, Any],
    ) -> Alert:
        unknown = set(updates) - AMENDABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be amended: {sorted(unknown)}",
                field=sorted(unknown)[0],
            )
        changes: Dict[str, Any] = {}
        if "classification" in updates:
            changes["classification"] = coerce_classification(updates["classification"])
        if "details" in updates:
            if not isinstance(updates["details"], str):
                raise ValidationError("details must be a string", field="details")
            changes["details"] = updates["details"]

        with self._lock:
            current = self._by_id.get(alert_id)
            if current is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if current.reporter_session_id != requester_session_id:
                raise ForbiddenError("Alert", alert_id=alert_id)

            amended = replace(current, amended_at=datetime.now(timezone.utc), **changes)
            pos = bisect.bisect_left(self._keys, current.sort_key)
            self._alerts[pos] = amended
            self._by_id[alert_id] = amended

        logger.info(
            "Alert %s amended: %s", alert_id, sorted(changes),
            extra={"alert_id": alert_id},
        )
        return amended

    async def count(self) -> int:
        with self._lock:
            return len(self._alerts)
