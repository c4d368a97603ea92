"""
FastAPI routes: the caller's live location for proximity notifications.

    PUT    /api/v1/subscriptions/me  — register / move the subscriber record
    DELETE /api/v1/subscriptions/me  — stop receiving nearby alerts
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from vecisafe.app.api.deps import current_session, get_services
from vecisafe.app.api.schemas import LocationInput, SubscriptionOut
from vecisafe.app.container import Services
from vecisafe.app.sessions.models import Session

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.put("/me", response_model=SubscriptionOut)
async def update_location(
    body: LocationInput,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> SubscriptionOut:
    record = await services.alerts.update_location(session, body.to_coordinate())
    return SubscriptionOut.from_record(record)


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
async def unsubscribe(
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> Response:
    await services.alerts.unsubscribe(session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
