"""
Shared fixtures: in-memory backends, fake transports and an instant sleep
so retry/backoff paths run without waiting.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from vecisafe.app.alerts.channels.push import PushTransport
from vecisafe.app.alerts.channels.sms import SimulatedSmsTransport
from vecisafe.app.alerts.fanout import FanoutDispatcher, RetryConfig
from vecisafe.app.alerts.service import AlertService
from vecisafe.app.alerts.store import InMemoryAlertStore
from vecisafe.app.sessions.manager import SessionManager
from vecisafe.app.sessions.store import InMemorySessionStore
from vecisafe.app.spatial.geo import Coordinate
from vecisafe.app.spatial.geo_index import GridGeoIndex

# Lower Manhattan and two reference points (≈14 m and ≈5.4 km away)
NYC = Coordinate(40.7128, -74.0060)
NYC_NEIGHBOUR = Coordinate(40.7129, -74.0061)
TIMES_SQUARE = Coordinate(40.7589, -73.9851)

TEST_SECRET = "test-secret-key"


class FakePushTransport(PushTransport):
    """Records every send; fails the first ``fail_times`` calls per recipient."""

    def __init__(self, fail_times: int = 0, raise_on_fail: bool = False) -> None:
        self.fail_times = fail_times
        self.raise_on_fail = raise_on_fail
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False

    def calls_for(self, recipient: str) -> int:
        return sum(1 for r, _ in self.calls if r == recipient)

    async def send(self, recipient_session_id: str, summary: Dict[str, Any]) -> bool:
        self.calls.append((recipient_session_id, summary))
        if self.calls_for(recipient_session_id) <= self.fail_times:
            if self.raise_on_fail:
                raise ConnectionError("push gateway unreachable")
            return False
        return True

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Awaitable sleep stand-in that only records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, start) -> None:
        self.now = start

    def __call__(self):
        return self.now


@pytest.fixture
def geo_index():
    return GridGeoIndex(0.01)


@pytest.fixture
def alert_store():
    return InMemoryAlertStore()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def sms():
    return SimulatedSmsTransport()


@pytest.fixture
def push():
    return FakePushTransport()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def session_manager(session_store, geo_index, sms):
    return SessionManager(session_store, geo_index, sms, secret_key=TEST_SECRET)


def make_dispatcher(
    geo_index,
    transport,
    sleep,
    *,
    radius_m: float = 500.0,
    max_attempts: int = 5,
    max_workers: int = 4,
) -> FanoutDispatcher:
    return FanoutDispatcher(
        geo_index,
        transport,
        radius_m=radius_m,
        retry=RetryConfig(max_attempts=max_attempts),
        max_workers=max_workers,
        sleep=sleep,
    )


@pytest.fixture
async def dispatcher(geo_index, push, no_sleep):
    d = make_dispatcher(geo_index, push, no_sleep)
    yield d
    await d.aclose()


def make_service(
    alert_store,
    session_manager,
    geo_index,
    dispatcher,
    *,
    require_verified: bool = False,
) -> AlertService:
    return AlertService(
        alert_store,
        session_manager,
        geo_index,
        dispatcher,
        require_verified=require_verified,
        details_max_length=200,
        media_max=3,
    )


@pytest.fixture
def service(alert_store, session_manager, geo_index, dispatcher):
    return make_service(alert_store, session_manager, geo_index, dispatcher)


async def verify(manager: SessionManager, sms: SimulatedSmsTransport, session, phone: str = "+12125550142"):
    """Drive a session through request + confirm with the code from the outbox."""
    await manager.request_verification(session, phone)
    code: Optional[str] = sms.last_code_for(phone)
    return await manager.confirm_verification(session, code)
