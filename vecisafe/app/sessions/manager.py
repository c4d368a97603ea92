"""
manager.py — Session lifecycle and phone verification.

Owns every Session transition (see models.py for the state machine).
Other components only read sessions through ``get``.

Verification codes:
    • numeric, VERIFICATION_CODE_LENGTH digits, drawn with ``secrets``
    • stored only as HMAC-SHA256(SECRET_KEY, "<session_id>:<code>")
    • kept in the session store next to the session, expiring after
      VERIFICATION_CODE_TTL_SECONDS
    • VERIFICATION_MAX_ATTEMPTS wrong answers reset the session to anonymous

Phone numbers are never stored; a verified session keeps
HMAC-SHA256(SECRET_KEY, normalised number) for later reference.

Devices:
    Binding a device id issues a device token,
    HMAC-SHA256(SECRET_KEY, "device:<device_id>"). Restoring the device's
    session requires it, and a bound device cannot be claimed again.

Transitions are serialised per session with an asyncio.Lock; unrelated
sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import math
import re
import secrets
import string
import weakref
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple, Union

from vecisafe.app.alerts.channels.sms import VerificationTransport, mask_phone
from vecisafe.app.core.config import settings as default_settings
from vecisafe.app.core.errors import (
    CodeExpiredError,
    CodeMismatchError,
    DeviceAlreadyRegisteredError,
    InvalidPhoneFormatError,
    InvalidSessionStateError,
    NotFoundError,
    UnauthenticatedError,
    VerificationAttemptsExceededError,
)
from vecisafe.app.sessions.models import Session, SessionPhase, VerificationChallenge
from vecisafe.app.sessions.store import SessionStore
from vecisafe.app.spatial.geo_index import GeoIndex

logger = logging.getLogger(__name__)

_PHONE_SEPARATORS = re.compile(r"[\s\-\.\(\)]")
_PHONE_SHAPE = re.compile(r"^\+?[1-9]\d{7,14}$")

SessionRef = Union[Session, str]


def normalize_phone(phone_number: str) -> str:
    """
    Strip separators and check an E.164-like shape.

    >>> normalize_phone("+1 (212) 555-0142")
    '+12125550142'
    """
    if not isinstance(phone_number, str):
        raise InvalidPhoneFormatError()
    candidate = _PHONE_SEPARATORS.sub("", phone_number)
    if not _PHONE_SHAPE.match(candidate):
        raise InvalidPhoneFormatError()
    return candidate


def session_id_of(session: SessionRef) -> str:
    return session.session_id if isinstance(session, Session) else session


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """
    Parameters
    ----------
    store : SessionStore
        Durable session records and pending challenges.
    geo_index : GeoIndex
        Subscriber index; sign-out drops the old session's record.
    transport : VerificationTransport
        Sends the code by SMS.
    secret_key : str
        HMAC key for code, phone and device hashes.
    clock : callable
        Returns the current aware UTC datetime; tests substitute it.
    """

    def __init__(
        self,
        store: SessionStore,
        geo_index: GeoIndex,
        transport: VerificationTransport,
        *,
        secret_key: str = default_settings.SECRET_KEY,
        code_ttl_seconds: int = default_settings.VERIFICATION_CODE_TTL_SECONDS,
        max_attempts: int = default_settings.VERIFICATION_MAX_ATTEMPTS,
        code_length: int = default_settings.VERIFICATION_CODE_LENGTH,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.geo_index = geo_index
        self.transport = transport
        self.code_ttl = timedelta(seconds=code_ttl_seconds)
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._secret = secret_key.encode("utf-8")
        self._clock = clock
        # An entry lives only while some coroutine holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ── helpers ──

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _digest(self, value: str) -> str:
        return hmac.new(self._secret, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def _code_hash(self, session_id: str, code: str) -> str:
        return self._digest(f"{session_id}:{code}")

    def _generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.code_length))

    def _seconds_left(self, challenge: VerificationChallenge) -> int:
        return max(1, math.ceil((challenge.expires_at - self._clock()).total_seconds()))

    async def _load(self, session: SessionRef) -> Session:
        return await self.get(session_id_of(session))

    def device_token(self, device_id: str) -> str:
        return self._digest(f"device:{device_id}")

    # ── queries ──

    async def get(self, session_id: str) -> Session:
        """Authoritative copy of a session."""
        session = await self.store.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id=session_id)
        return session

    async def current_for_device(self, device_id: str) -> Session:
        """The device's stored session, or a new anonymous one on first launch."""
        session_id = await self.store.get_device_session(device_id)
        if session_id:
            session = await self.store.get(session_id)
            if session is not None:
                return session
        return await self.create_anonymous(device_id)

    async def restore_device(self, device_id: str, device_token: Optional[str]) -> Session:
        """``current_for_device`` for a caller holding the device token."""
        expected = self.device_token(device_id).encode("utf-8")
        if not hmac.compare_digest(expected, str(device_token or "").encode("utf-8")):
            raise UnauthenticatedError("Device token does not match", device_id=device_id)
        return await self.current_for_device(device_id)

    # ── transitions ──

    async def create_anonymous(self, device_id: Optional[str] = None) -> Session:
        session = Session(device_id=device_id, created_at=self._clock())
        await self.store.set(session)
        if device_id:
            await self.store.set_device_session(device_id, session.session_id)
        logger.info(
            "Anonymous session %s created", session.session_id,
            extra={"session_id": session.session_id},
        )
        return session

    async def register_device(self, device_id: str) -> Tuple[Session, str]:
        """
        Bind ``device_id`` to a new anonymous session and return its token.

        A device whose current session is still live stays with its owner;
        they restore it with the token instead.
        """
        async with self._lock_for(f"device:{device_id}"):
            bound = await self.store.get_device_session(device_id)
            if bound and await self.store.get(bound) is not None:
                raise DeviceAlreadyRegisteredError(device_id)
            session = await self.create_anonymous(device_id)
        return session, self.device_token(device_id)

    async def request_verification(self, session: SessionRef, phone_number: str) -> None:
        """Send a code to ``phone_number`` and move the session to pending."""
        normalized = normalize_phone(phone_number)
        session_id = session_id_of(session)

        async with self._lock_for(session_id):
            current = await self._load(session_id)
            if current.is_verified:
                raise InvalidSessionStateError(
                    session_id, current.phase.value, "request verification",
                )

            code = self._generate_code()
            await self.transport.send_code(normalized, code)

            challenge = VerificationChallenge(
                code_hash=self._code_hash(session_id, code),
                phone_hash=self._digest(normalized),
                expires_at=self._clock() + self.code_ttl,
            )
            await self.store.set_challenge(
                session_id, challenge, int(self.code_ttl.total_seconds()),
            )
            await self.store.set(replace(current, phase=SessionPhase.PENDING_VERIFICATION))

        logger.info(
            "Verification code issued for %s → %s",
            session_id, mask_phone(normalized),
            extra={"session_id": session_id},
        )

    async def confirm_verification(self, session: SessionRef, code: str) -> Session:
        """Check ``code``; on success the session becomes verified."""
        session_id = session_id_of(session)

        async with self._lock_for(session_id):
            current = await self._load(session_id)
            if current.phase != SessionPhase.PENDING_VERIFICATION:
                raise InvalidSessionStateError(
                    session_id, current.phase.value, "confirm verification",
                )

            # A pending session whose challenge has lapsed out of the store
            # is treated the same as an expired code.
            challenge = await self.store.get_challenge(session_id)
            if challenge is None or self._clock() >= challenge.expires_at:
                raise CodeExpiredError()

            supplied = self._code_hash(session_id, str(code).strip())
            if not hmac.compare_digest(challenge.code_hash, supplied):
                challenge.attempts += 1
                if challenge.attempts >= self.max_attempts:
                    await self.store.delete_challenge(session_id)
                    await self.store.set(replace(current, phase=SessionPhase.ANONYMOUS))
                    logger.warning(
                        "Session %s reset to anonymous after %d wrong codes",
                        session_id, challenge.attempts,
                        extra={"session_id": session_id},
                    )
                    raise VerificationAttemptsExceededError(self.max_attempts)
                await self.store.set_challenge(
                    session_id, challenge, self._seconds_left(challenge),
                )
                raise CodeMismatchError(self.max_attempts - challenge.attempts)

            await self.store.delete_challenge(session_id)
            verified = replace(
                current,
                phase=SessionPhase.VERIFIED,
                phone_number_hash=challenge.phone_hash,
                verified_at=self._clock(),
            )
            await self.store.set(verified)

        logger.info("Session %s verified", session_id, extra={"session_id": session_id})
        return verified

    async def sign_out(self, session: SessionRef) -> Session:
        """Retire the session and hand back a fresh anonymous one."""
        session_id = session_id_of(session)
        device_id = session.device_id if isinstance(session, Session) else None

        async with self._lock_for(session_id):
            stored = await self.store.get(session_id)
            if stored is not None:
                device_id = stored.device_id
            self.geo_index.remove(session_id)
            await self.store.delete_challenge(session_id)
            await self.store.delete(session_id)

        logger.info("Session %s signed out", session_id, extra={"session_id": session_id})
        return await self.create_anonymous(device_id)
