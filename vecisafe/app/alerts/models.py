"""
models.py — Shared data structures for incident reporting and fanout.

Defines:
    • Classification  — incident category chosen by the reporter
    • DeliveryStatus  — per-recipient delivery state machine
    • Alert           — an immutable incident report
    • DeliveryIntent  — one tracked "notify this recipient" unit
    • LocationReading — a single reading from the device location provider

═══════════════════════════════════════════════════════════════════════════
DELIVERY STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    PENDING ──send ok──► SENT                     (terminal, sticky)
       │
       └──send fails──► FAILED ──backoff──► retry ──► SENT
                          │
                          └── max attempts reached ──► EXHAUSTED (terminal)

At most one non-exhausted intent exists per (alert_id, recipient) pair.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from vecisafe.app.core.errors import ValidationError
from vecisafe.app.spatial.geo import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Classification(str, Enum):
    """Incident categories offered to the reporter."""
    GENERAL    = "general"
    ROBBERY    = "robbery"
    ASSAULT    = "assault"
    SUSPICIOUS = "suspicious"
    OTHER      = "other"


class DeliveryStatus(str, Enum):
    """Delivery state per recipient per alert."""
    PENDING   = "pending"    # created, no attempt finished yet
    SENT      = "sent"       # transport accepted the push
    FAILED    = "failed"     # last attempt failed, retry scheduled
    EXHAUSTED = "exhausted"  # max attempts reached

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SENT, DeliveryStatus.EXHAUSTED)


# Amendable alert fields
AMENDABLE_FIELDS = frozenset({"classification", "details"})


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Alert:
    """
    An incident report.

    ``id`` and ``created_at`` are left empty by the caller and filled in by
    the AlertStore on append. Only ``classification`` and ``details`` can
    change afterwards, through ``AlertStore.amend``.
    """
    reporter_session_id: str
    location: Coordinate
    classification: Classification = Classification.GENERAL
    details: str = ""
    media_refs: Tuple[str, ...] = ()
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    amended_at: Optional[datetime] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at or datetime.min.replace(tzinfo=timezone.utc), self.id or "")

    def summary(self, max_len: int = 120) -> Dict[str, Any]:
        """Compact payload handed to the push transport."""
        text = self.details.strip()
        if len(text) > max_len:
            text = text[: max_len - 3] + "..."
        return {
            "alert_id": self.id,
            "title": f"{self.classification.value.capitalize()} reported nearby",
            "body": text,
            "classification": self.classification.value,
            "location": self.location.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reporter_session_id": self.reporter_session_id,
            "location": self.location.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "classification": self.classification.value,
            "details": self.details,
            "media_refs": list(self.media_refs),
            "amended_at": self.amended_at.isoformat() if self.amended_at else None,
        }


@dataclass
class DeliveryIntent:
    """Tracked unit of "notify this recipient about this alert"."""
    alert_id: str
    recipient_session_id: str
    attempt: int = 0
    status: DeliveryStatus = DeliveryStatus.PENDING
    intent_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.alert_id, self.recipient_session_id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark(self, status: DeliveryStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.last_error = error
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "alert_id": self.alert_id,
            "recipient_session_id": self.recipient_session_id,
            "attempt": self.attempt,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class LocationReading:
    """One reading from the device's location provider."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # metres
    timestamp: datetime = field(default_factory=_now)

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


def coerce_classification(value: Any) -> Classification:
    """Accept an enum member or its (case-insensitive) string value."""
    if isinstance(value, Classification):
        return value
    try:
        return Classification(str(value).strip().lower())
    except ValueError:
        valid = [c.value for c in Classification]
        raise ValidationError(
            f"Invalid classification {value!r}. Must be one of: {valid}",
            field="classification",
        ) from None
