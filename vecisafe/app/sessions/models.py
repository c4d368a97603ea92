"""
models.py — Session identity records.

═══════════════════════════════════════════════════════════════════════════
SESSION STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    ANONYMOUS ──request_verification──► PENDING_VERIFICATION
                                              │
                       ┌──── wrong code ──────┤ (attempts < max)
                       ▼                      │
              PENDING_VERIFICATION            │ correct code
                                              ▼
      wrong code, attempts == max ──► ANONYMOUS     VERIFIED

    any phase ──sign_out──► fresh ANONYMOUS session (new id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SessionPhase(str, Enum):
    """Identity-verification stage of a device's current session."""
    ANONYMOUS            = "anonymous"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED             = "verified"


def _generate_session_id() -> str:
    return f"ses_{uuid.uuid4().hex}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Session:
    """A device's current identity. Only SessionManager creates new versions."""
    session_id: str = field(default_factory=_generate_session_id)
    phase: SessionPhase = SessionPhase.ANONYMOUS
    phone_number_hash: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    device_id: Optional[str] = None
    verified_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.phase == SessionPhase.VERIFIED

    @property
    def is_anonymous(self) -> bool:
        return self.phase == SessionPhase.ANONYMOUS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "phone_number_hash": self.phone_number_hash,
            "created_at": self.created_at.isoformat(),
            "device_id": self.device_id,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        verified_at = data.get("verified_at")
        return cls(
            session_id=data["session_id"],
            phase=SessionPhase(data["phase"]),
            phone_number_hash=data.get("phone_number_hash"),
            created_at=datetime.fromisoformat(data["created_at"]),
            device_id=data.get("device_id"),
            verified_at=datetime.fromisoformat(verified_at) if verified_at else None,
        )


@dataclass
class VerificationChallenge:
    """Outstanding code for one pending session, persisted beside it."""
    code_hash: str
    phone_hash: str
    expires_at: datetime
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code_hash": self.code_hash,
            "phone_hash": self.phone_hash,
            "expires_at": self.expires_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationChallenge":
        return cls(
            code_hash=data["code_hash"],
            phone_hash=data["phone_hash"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
        )
