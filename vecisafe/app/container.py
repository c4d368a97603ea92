"""
container.py — Builds and wires every component from Settings.

    services = build_services(settings)
    ...
    await services.close()

The FastAPI lifespan keeps one Services instance on ``app.state.services``;
tests build their own with in-memory backends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from vecisafe.app.alerts.channels.push import PushTransport, build_push_transport
from vecisafe.app.alerts.channels.sms import VerificationTransport, build_verification_transport
from vecisafe.app.alerts.fanout import FanoutDispatcher, RetryConfig
from vecisafe.app.alerts.service import AlertService
from vecisafe.app.alerts.store import AlertStore, InMemoryAlertStore
from vecisafe.app.core.config import Settings, settings as default_settings
from vecisafe.app.sessions.manager import SessionManager
from vecisafe.app.sessions.store import SessionStore, build_session_store
from vecisafe.app.spatial.geo_index import GeoIndex, build_geo_index

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Settings
    session_store: SessionStore
    geo_index: GeoIndex
    alert_store: AlertStore
    push_transport: PushTransport
    sms_transport: VerificationTransport
    sessions: SessionManager
    dispatcher: FanoutDispatcher
    alerts: AlertService

    async def close(self) -> None:
        """Stop in-flight fanout, then release transports and storage."""
        stats = self.dispatcher.stats()
        await self.dispatcher.aclose()
        await self.push_transport.close()
        await self.sms_transport.close()
        await self.session_store.close()
        logger.info(
            "Services closed (%d pending, %d failed intents left)",
            stats["pending"], stats["failed"],
        )


def build_services(config: Settings = default_settings) -> Services:
    """Construct the object graph selected by ``config``."""
    session_store = build_session_store(config)
    geo_index = build_geo_index(config.GEO_INDEX_BACKEND, cell_size_deg=config.GEO_CELL_SIZE_DEG)
    alert_store = InMemoryAlertStore()
    push_transport = build_push_transport(config)
    sms_transport = build_verification_transport(config)

    sessions = SessionManager(
        session_store,
        geo_index,
        sms_transport,
        secret_key=config.SECRET_KEY,
        code_ttl_seconds=config.VERIFICATION_CODE_TTL_SECONDS,
        max_attempts=config.VERIFICATION_MAX_ATTEMPTS,
        code_length=config.VERIFICATION_CODE_LENGTH,
    )
    dispatcher = FanoutDispatcher(
        geo_index,
        push_transport,
        radius_m=config.FANOUT_RADIUS_M,
        retry=RetryConfig.from_settings(config),
        max_workers=config.FANOUT_WORKERS,
    )
    alerts = AlertService(
        alert_store,
        sessions,
        geo_index,
        dispatcher,
        require_verified=config.REQUIRE_VERIFIED,
        details_max_length=config.ALERT_DETAILS_MAX_LENGTH,
        media_max=config.ALERT_MEDIA_MAX,
        feed_default_limit=config.ALERT_FEED_DEFAULT_LIMIT,
    )

    logger.info(
        "Services built: sessions=%s geo_index=%s push=%s sms=%s",
        config.SESSION_BACKEND, config.GEO_INDEX_BACKEND,
        config.PUSH_PROVIDER, config.SMS_PROVIDER,
    )
    return Services(
        config=config,
        session_store=session_store,
        geo_index=geo_index,
        alert_store=alert_store,
        push_transport=push_transport,
        sms_transport=sms_transport,
        sessions=sessions,
        dispatcher=dispatcher,
        alerts=alerts,
    )
