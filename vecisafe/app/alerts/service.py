"""
service.py — Incident reporting orchestration.

═══════════════════════════════════════════════════════════════════════════
REPORT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Location        │  None → LocationUnavailable (store untouched)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Identity        │  Re-read the session; REQUIRE_VERIFIED policy
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Validate        │  classification, details length, media refs
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Append          │  AlertStore assigns id + created_at
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Subscribe       │  Reporter's location upserted into GeoIndex
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  6. Fanout          │  Intents created and scheduled; failures here
    │                     │  are logged and never undo the report
    └─────────────────────┘
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from vecisafe.app.alerts.fanout import FanoutDispatcher
from vecisafe.app.alerts.models import Alert, Classification, DeliveryIntent, LocationReading, coerce_classification
from vecisafe.app.alerts.store import AlertStore
from vecisafe.app.core.config import settings as default_settings
from vecisafe.app.core.errors import (
    LocationUnavailableError,
    StorageUnavailableError,
    UnauthenticatedError,
    ValidationError,
    VecisafeError,
)
from vecisafe.app.sessions.manager import SessionManager, SessionRef, session_id_of
from vecisafe.app.sessions.models import Session
from vecisafe.app.spatial.geo import Coordinate, is_within
from vecisafe.app.spatial.geo_index import GeoIndex, SubscriberRecord

logger = logging.getLogger(__name__)

LocationLike = Union[Coordinate, LocationReading, Tuple[float, float]]

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
_LATEST = datetime.max.replace(tzinfo=timezone.utc)


class TimeWindow(str, Enum):
    """Feed filter presets."""
    LAST_24H  = "24h"
    LAST_WEEK = "1week"
    ALL       = "all"


_WINDOW_SPANS = {
    TimeWindow.LAST_24H: timedelta(hours=24),
    TimeWindow.LAST_WEEK: timedelta(days=7),
}


class LocationProvider(Protocol):
    async def current_location(self) -> Optional[LocationReading]:
        ...


def to_coordinate(location: LocationLike) -> Coordinate:
    """Normalise the accepted location shapes; range errors propagate."""
    if isinstance(location, Coordinate):
        return location
    if isinstance(location, LocationReading):
        return location.to_coordinate()
    latitude, longitude = location
    return Coordinate(latitude, longitude)


class AlertService:
    """
    Public surface for reporting and reading alerts.

    Parameters
    ----------
    store : AlertStore
    sessions : SessionManager
        Source of truth for the reporter's identity phase.
    geo_index : GeoIndex
    dispatcher : FanoutDispatcher
    require_verified : bool
        When True only verified sessions may report.
    """

    def __init__(
        self,
        store: AlertStore,
        sessions: SessionManager,
        geo_index: GeoIndex,
        dispatcher: FanoutDispatcher,
        *,
        require_verified: bool = default_settings.REQUIRE_VERIFIED,
        details_max_length: int = default_settings.ALERT_DETAILS_MAX_LENGTH,
        media_max: int = default_settings.ALERT_MEDIA_MAX,
        feed_default_limit: int = default_settings.ALERT_FEED_DEFAULT_LIMIT,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.geo_index = geo_index
        self.dispatcher = dispatcher
        self.require_verified = require_verified
        self.details_max_length = details_max_length
        self.media_max = media_max
        self.feed_default_limit = feed_default_limit

    # ── validation helpers ──

    def _check_details(self, details: Any) -> str:
        if details is None:
            return ""
        if not isinstance(details, str):
            raise ValidationError("details must be a string", field="details")
        if len(details) > self.details_max_length:
            raise ValidationError(
                f"details exceeds {self.details_max_length} characters",
                field="details",
                max_length=self.details_max_length,
            )
        return details

    def _check_media(self, media_refs: Iterable[str]) -> Tuple[str, ...]:
        refs = tuple(media_refs or ())
        if len(refs) > self.media_max:
            raise ValidationError(
                f"At most {self.media_max} media references allowed",
                field="media_refs",
                max_items=self.media_max,
            )
        for ref in refs:
            if not isinstance(ref, str) or not ref.strip():
                raise ValidationError("media references must be non-empty strings", field="media_refs")
        return refs

    async def _reporter(self, session: SessionRef) -> Session:
        current = await self.sessions.get(session_id_of(session))
        if self.require_verified and not current.is_verified:
            raise UnauthenticatedError(
                "Only verified sessions may report alerts",
                session_id=current.session_id,
                phase=current.phase.value,
            )
        return current

    # ── reporting ──

    async def report_alert(
        self,
        session: SessionRef,
        location: Optional[LocationLike],
        classification: Union[Classification, str] = Classification.GENERAL,
        details: Optional[str] = "",
        *,
        media_refs: Sequence[str] = (),
    ) -> Alert:
        """Store an alert and fan it out to nearby subscribers."""
        if location is None:
            raise LocationUnavailableError("A location is required to report an alert")

        reporter = await self._reporter(session)
        coordinate = to_coordinate(location)
        alert = Alert(
            reporter_session_id=reporter.session_id,
            location=coordinate,
            classification=coerce_classification(classification),
            details=self._check_details(details),
            media_refs=self._check_media(media_refs),
        )

        try:
            stored = await self.store.append(alert)
        except (ConnectionError, OSError) as exc:
            logger.error("Alert store append failed: %s", exc)
            raise StorageUnavailableError("alert_store", str(exc)) from exc

        self.geo_index.upsert(reporter.session_id, coordinate)

        try:
            await self.dispatcher.dispatch(stored)
        except Exception as exc:
            logger.error(
                "Fanout for %s failed to start: %s", stored.id, exc,
                extra={"alert_id": stored.id, "session_id": reporter.session_id},
            )

        return stored

    async def amend_alert(
        self,
        session: SessionRef,
        alert_id: str,
        updates: Mapping[str, Any],
    ) -> Alert:
        if "details" in updates:
            self._check_details(updates["details"])
        return await self.store.amend(alert_id, session_id_of(session), updates)

    # ── location & subscription ──

    async def locate(self, provider: Optional[LocationProvider]) -> Coordinate:
        """Read the device location, or raise LocationUnavailable."""
        if provider is None:
            raise LocationUnavailableError("No location provider configured")
        try:
            reading = await provider.current_location()
        except VecisafeError:
            raise
        except Exception as exc:
            logger.warning("Location provider failed: %s", exc)
            raise LocationUnavailableError(f"Location provider failed: {exc}") from exc
        if reading is None:
            raise LocationUnavailableError()
        return to_coordinate(reading)

    async def update_location(self, session: SessionRef, location: Optional[LocationLike]) -> SubscriberRecord:
        if location is None:
            raise LocationUnavailableError()
        current = await self.sessions.get(session_id_of(session))
        return self.geo_index.upsert(current.session_id, to_coordinate(location))

    async def unsubscribe(self, session: SessionRef) -> None:
        self.geo_index.remove(session_id_of(session))

    # ── reads ──

    async def recent(self, n: Optional[int] = None) -> List[Alert]:
        return await self.store.recent(self.feed_default_limit if n is None else n)

    async def window(self, since: datetime, until: datetime) -> List[Alert]:
        return await self.store.window(since, until)

    async def window_for(self, preset: Union[TimeWindow, str], now: Optional[datetime] = None) -> List[Alert]:
        try:
            preset = TimeWindow(preset)
        except ValueError:
            raise ValidationError(
                f"Unknown time window {preset!r}. Must be one of: {[w.value for w in TimeWindow]}",
                field="window",
            ) from None
        if preset == TimeWindow.ALL:
            return await self.store.window(_EARLIEST, _LATEST)
        now = now or datetime.now(timezone.utc)
        return await self.store.window(now - _WINDOW_SPANS[preset], now)

    async def nearby_alerts(
        self,
        location: LocationLike,
        radius_meters: float,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Alert]:
        """Alerts within ``radius_meters`` of ``location``, newest first."""
        if not (isinstance(radius_meters, (int, float)) and math.isfinite(radius_meters)
                and radius_meters >= 0):
            raise ValidationError(
                f"radius_meters must be a non-negative number, got {radius_meters!r}",
                field="radius_meters",
            )
        center = to_coordinate(location)
        alerts = await self.store.window(since or _EARLIEST, until or _LATEST)
        return [a for a in alerts if is_within(center, a.location, radius_meters)]

    async def deliveries(self, alert_id: str) -> List[DeliveryIntent]:
        await self.store.get(alert_id)
        return self.dispatcher.intents_for(alert_id)

    async def exhausted_deliveries(self) -> List[DeliveryIntent]:
        return self.dispatcher.exhausted()
