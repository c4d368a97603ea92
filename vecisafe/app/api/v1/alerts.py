"""
FastAPI routes: incident reporting and the alert feed.

    POST  /api/v1/alerts                        — report an incident
    GET   /api/v1/alerts?limit=N                — most recent alerts
    GET   /api/v1/alerts/window/{preset}        — 24h | 1week | all
    GET   /api/v1/alerts/range?since=&until=    — explicit time range
    POST  /api/v1/alerts/nearby                 — alerts around a point
    GET   /api/v1/alerts/deliveries/exhausted   — deliveries that gave up
    GET   /api/v1/alerts/{id}                   — single alert
    PATCH /api/v1/alerts/{id}                   — reporter amends
    GET   /api/v1/alerts/{id}/deliveries        — reporter's delivery view
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query, status

from vecisafe.app.alerts.models import Alert
from vecisafe.app.alerts.service import TimeWindow
from vecisafe.app.api.deps import current_session, get_services
from vecisafe.app.api.schemas import (
    AlertListResponse,
    AlertOut,
    AmendAlertRequest,
    DeliveryListResponse,
    DeliveryOut,
    NearbyAlertsRequest,
    ReportAlertRequest,
    ReportAlertResponse,
)
from vecisafe.app.container import Services
from vecisafe.app.core.errors import ForbiddenError
from vecisafe.app.sessions.models import Session
from vecisafe.app.spatial.geo import haversine_m

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _alert_list(alerts: List[Alert]) -> AlertListResponse:
    return AlertListResponse(count=len(alerts), alerts=[AlertOut.from_alert(a) for a in alerts])


@router.post("", response_model=ReportAlertResponse, status_code=status.HTTP_201_CREATED)
async def report_alert(
    body: ReportAlertRequest,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> ReportAlertResponse:
    location = body.location.to_coordinate() if body.location else None
    alert = await services.alerts.report_alert(
        session,
        location,
        body.classification,
        body.details,
        media_refs=body.media_refs,
    )
    return ReportAlertResponse(
        alert=AlertOut.from_alert(alert),
        deliveries_scheduled=len(services.dispatcher.intents_for(alert.id)),
    )


@router.get("", response_model=AlertListResponse)
async def recent_alerts(
    limit: int = Query(50, ge=0, le=500),
    services: Services = Depends(get_services),
) -> AlertListResponse:
    return _alert_list(await services.alerts.recent(limit))


@router.get("/window/{preset}", response_model=AlertListResponse)
async def alerts_in_window(
    preset: TimeWindow,
    services: Services = Depends(get_services),
) -> AlertListResponse:
    return _alert_list(await services.alerts.window_for(preset))


@router.get("/range", response_model=AlertListResponse)
async def alerts_in_range(
    since: datetime = Query(...),
    until: datetime = Query(...),
    services: Services = Depends(get_services),
) -> AlertListResponse:
    return _alert_list(await services.alerts.window(since, until))


@router.post("/nearby", response_model=AlertListResponse)
async def nearby_alerts(
    body: NearbyAlertsRequest,
    services: Services = Depends(get_services),
) -> AlertListResponse:
    center = body.location.to_coordinate()
    alerts = await services.alerts.nearby_alerts(
        center, body.radius_meters, since=body.since, until=body.until,
    )
    return AlertListResponse(
        count=len(alerts),
        alerts=[AlertOut.from_alert(a, haversine_m(center, a.location)) for a in alerts],
    )


@router.get("/deliveries/exhausted", response_model=DeliveryListResponse)
async def exhausted_deliveries(
    services: Services = Depends(get_services),
) -> DeliveryListResponse:
    intents = await services.alerts.exhausted_deliveries()
    return DeliveryListResponse(
        count=len(intents),
        deliveries=[DeliveryOut.from_intent(i) for i in intents],
    )


@router.get("/{alert_id}", response_model=AlertOut)
async def get_alert(
    alert_id: str,
    services: Services = Depends(get_services),
) -> AlertOut:
    return AlertOut.from_alert(await services.alert_store.get(alert_id))


@router.patch("/{alert_id}", response_model=AlertOut)
async def amend_alert(
    alert_id: str,
    body: AmendAlertRequest,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> AlertOut:
    amended = await services.alerts.amend_alert(session, alert_id, body.updates())
    return AlertOut.from_alert(amended)


@router.get("/{alert_id}/deliveries", response_model=DeliveryListResponse)
async def alert_deliveries(
    alert_id: str,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> DeliveryListResponse:
    alert = await services.alert_store.get(alert_id)
    if alert.reporter_session_id != session.session_id:
        raise ForbiddenError("Alert", alert_id=alert_id)
    intents = await services.alerts.deliveries(alert_id)
    return DeliveryListResponse(
        count=len(intents),
        deliveries=[DeliveryOut.from_intent(i) for i in intents],
    )
