"""
store.py — Durable key-value storage for sessions.

Keys:
    <prefix>:session:<session_id>    → Session JSON
    <prefix>:device:<device_id>      → current session id for the device
    <prefix>:challenge:<session_id>  → VerificationChallenge JSON, with TTL

Backends:
    InMemorySessionStore — dicts, lost on restart (development/tests)
    RedisSessionStore    — redis.asyncio, survives process restarts and is
                           shared by every worker

Challenges are written with an expiry so abandoned ones drop out on their
own. Redis connection or command failures surface as
StorageUnavailableError; the session manager does not retry them.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from redis.exceptions import RedisError

from vecisafe.app.core.config import Settings, settings as default_settings
from vecisafe.app.core.errors import StorageUnavailableError
from vecisafe.app.sessions.models import Session, VerificationChallenge

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Session records, the device → session pointer and pending challenges."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def set(self, session: Session) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def get_device_session(self, device_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_device_session(self, device_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    async def get_challenge(self, session_id: str) -> Optional[VerificationChallenge]:
        ...

    @abstractmethod
    async def set_challenge(
        self, session_id: str, challenge: VerificationChallenge, ttl_seconds: int,
    ) -> None:
        ...

    @abstractmethod
    async def delete_challenge(self, session_id: str) -> None:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):

    def __init__(self, monotonic=time.monotonic) -> None:
        self._sessions: Dict[str, Session] = {}
        self._devices: Dict[str, str] = {}
        # session_id → (challenge JSON, monotonic deadline)
        self._challenges: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._monotonic = monotonic

    async def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def set(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def get_device_session(self, device_id: str) -> Optional[str]:
        return self._devices.get(device_id)

    async def set_device_session(self, device_id: str, session_id: str) -> None:
        self._devices[device_id] = session_id

    async def get_challenge(self, session_id: str) -> Optional[VerificationChallenge]:
        entry = self._challenges.get(session_id)
        if entry is None:
            return None
        data, deadline = entry
        if self._monotonic() >= deadline:
            del self._challenges[session_id]
            return None
        return VerificationChallenge.from_dict(data)

    async def set_challenge(
        self, session_id: str, challenge: VerificationChallenge, ttl_seconds: int,
    ) -> None:
        self._challenges[session_id] = (challenge.to_dict(), self._monotonic() + ttl_seconds)

    async def delete_challenge(self, session_id: str) -> None:
        self._challenges.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """Session blobs in Redis as JSON strings."""

    def __init__(
        self,
        url: str = default_settings.REDIS_URL,
        *,
        prefix: str = default_settings.SESSION_KEY_PREFIX,
        client: Any = None,
    ) -> None:
        self.url = url
        self.prefix = prefix
        self._client = client

    def _session_key(self, session_id: str) -> str:
        return f"{self.prefix}:session:{session_id}"

    def _device_key(self, device_id: str) -> str:
        return f"{self.prefix}:device:{device_id}"

    def _challenge_key(self, session_id: str) -> str:
        return f"{self.prefix}:challenge:{session_id}"

    async def _get_redis(self):
        """Get or create the async Redis client."""
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis session store: %s", self.url)
        return self._client

    async def _call(self, op: str, *args: Any, **kwargs: Any) -> Any:
        client = await self._get_redis()
        try:
            return await getattr(client, op)(*args, **kwargs)
        except (RedisError, OSError) as exc:
            logger.error("Redis %s failed: %s", op.upper(), exc)
            raise StorageUnavailableError("session_store", str(exc)) from exc

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self._call("get", self._session_key(session_id))
        if raw is None:
            return None
        return Session.from_dict(json.loads(raw))

    async def set(self, session: Session) -> None:
        await self._call(
            "set", self._session_key(session.session_id),
            json.dumps(session.to_dict(), default=str),
        )

    async def delete(self, session_id: str) -> None:
        await self._call("delete", self._session_key(session_id))

    async def get_device_session(self, device_id: str) -> Optional[str]:
        return await self._call("get", self._device_key(device_id))

    async def set_device_session(self, device_id: str, session_id: str) -> None:
        await self._call("set", self._device_key(device_id), session_id)

    async def get_challenge(self, session_id: str) -> Optional[VerificationChallenge]:
        raw = await self._call("get", self._challenge_key(session_id))
        if raw is None:
            return None
        return VerificationChallenge.from_dict(json.loads(raw))

    async def set_challenge(
        self, session_id: str, challenge: VerificationChallenge, ttl_seconds: int,
    ) -> None:
        await self._call(
            "set", self._challenge_key(session_id),
            json.dumps(challenge.to_dict()), ex=max(1, int(ttl_seconds)),
        )

    async def delete_challenge(self, session_id: str) -> None:
        await self._call("delete", self._challenge_key(session_id))

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping"))
        except StorageUnavailableError:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis session store closed")


def build_session_store(config: Settings = default_settings) -> SessionStore:
    if config.SESSION_BACKEND == "memory":
        return InMemorySessionStore()
    if config.SESSION_BACKEND == "redis":
        return RedisSessionStore(config.REDIS_URL, prefix=config.SESSION_KEY_PREFIX)
    raise ValueError(f"Unknown SESSION_BACKEND: {config.SESSION_BACKEND!r}")
