"""
Pydantic schemas for the VeciSafe HTTP API.

Separated from the route handlers so they are reusable across routers
and tests.

Latitude / longitude carry no range constraints here: the domain layer
rejects them with INVALID_LOCATION so every client sees one error shape.
Session ids double as bearer credentials (``X-Session-ID``), so no
response exposes another session's id.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vecisafe.app.alerts.models import Alert, Classification, DeliveryIntent
from vecisafe.app.sessions.models import Session
from vecisafe.app.spatial.geo import Coordinate, format_distance
from vecisafe.app.spatial.geo_index import SubscriberRecord


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """A device location fix."""
    latitude: float = Field(..., description="Latitude in decimal degrees", examples=[40.7128])
    longitude: float = Field(..., description="Longitude in decimal degrees", examples=[-74.0060])
    accuracy: Optional[float] = Field(None, ge=0, description="Accuracy radius in metres")

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


class CreateSessionRequest(BaseModel):
    device_id: Optional[str] = Field(None, max_length=128, examples=["device-7f3a"])


class VerificationRequest(BaseModel):
    phone_number: str = Field(..., examples=["+12125550142"])


class VerificationConfirm(BaseModel):
    code: str = Field(..., examples=["123456"])


class ReportAlertRequest(BaseModel):
    """Body for POST /api/v1/alerts. ``location`` may be null when the device has no fix."""
    location: Optional[LocationInput] = None
    classification: str = Field(Classification.GENERAL.value, examples=["robbery"])
    details: str = Field("", examples=["Two people grabbed a bag near the subway entrance"])
    media_refs: List[str] = Field(default_factory=list)


class AmendAlertRequest(BaseModel):
    classification: Optional[str] = None
    details: Optional[str] = None

    def updates(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class NearbyAlertsRequest(BaseModel):
    location: LocationInput
    radius_meters: float = Field(500.0, examples=[500.0])
    since: Optional[datetime] = None
    until: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CoordinateOut(BaseModel):
    latitude: float
    longitude: float


class SessionOut(BaseModel):
    session_id: str
    phase: str
    device_id: Optional[str] = None
    created_at: datetime
    verified_at: Optional[datetime] = None
    device_token: Optional[str] = Field(
        None, description="Returned once, when a device is first bound; needed to restore it",
    )

    @classmethod
    def from_session(cls, session: Session, device_token: Optional[str] = None) -> "SessionOut":
        return cls(
            session_id=session.session_id,
            phase=session.phase.value,
            device_id=session.device_id,
            created_at=session.created_at,
            verified_at=session.verified_at,
            device_token=device_token,
        )


class VerificationIssuedOut(BaseModel):
    status: str = "code_sent"
    expires_in_seconds: int


class AlertOut(BaseModel):
    id: str
    location: CoordinateOut
    created_at: datetime
    classification: str
    details: str = ""
    media_refs: List[str] = Field(default_factory=list)
    amended_at: Optional[datetime] = None
    distance_m: Optional[float] = Field(None, description="Distance from the query point")
    distance_label: Optional[str] = Field(None, examples=["450 m", "5.42 km"])

    @classmethod
    def from_alert(cls, alert: Alert, distance_m: Optional[float] = None) -> "AlertOut":
        return cls(
            id=alert.id,
            location=CoordinateOut(**alert.location.to_dict()),
            created_at=alert.created_at,
            classification=alert.classification.value,
            details=alert.details,
            media_refs=list(alert.media_refs),
            amended_at=alert.amended_at,
            distance_m=round(distance_m, 1) if distance_m is not None else None,
            distance_label=format_distance(distance_m) if distance_m is not None else None,
        )


class AlertListResponse(BaseModel):
    count: int
    alerts: List[AlertOut]


class ReportAlertResponse(BaseModel):
    alert: AlertOut
    deliveries_scheduled: int


class DeliveryOut(BaseModel):
    intent_id: str
    alert_id: str
    attempt: int
    status: str
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_intent(cls, intent: DeliveryIntent) -> "DeliveryOut":
        return cls(
            intent_id=intent.intent_id,
            alert_id=intent.alert_id,
            attempt=intent.attempt,
            status=intent.status.value,
            last_error=intent.last_error,
            created_at=intent.created_at,
            updated_at=intent.updated_at,
        )


class DeliveryListResponse(BaseModel):
    count: int
    deliveries: List[DeliveryOut]


class SubscriptionOut(BaseModel):
    session_id: str
    location: CoordinateOut
    registered_at: datetime

    @classmethod
    def from_record(cls, record: SubscriberRecord) -> "SubscriptionOut":
        return cls(
            session_id=record.session_id,
            location=CoordinateOut(**record.location.to_dict()),
            registered_at=record.registered_at,
        )
