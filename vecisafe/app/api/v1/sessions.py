"""
FastAPI routes: device sessions and phone verification.

    POST /api/v1/sessions                          — new anonymous session
    GET  /api/v1/sessions/device/{device_id}       — restore a device's session
    GET  /api/v1/sessions/me                       — caller's session
    POST /api/v1/sessions/me/verification          — send a code by SMS
    POST /api/v1/sessions/me/verification/confirm  — submit the code
    POST /api/v1/sessions/me/sign-out              — retire, get a fresh session

The caller's session id travels in the ``X-Session-ID`` header. Binding a
device id hands back a device token once; restoring that device's session
later needs it in ``X-Device-Token``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, status

from vecisafe.app.api.deps import current_session, get_services
from vecisafe.app.api.schemas import (
    CreateSessionRequest,
    SessionOut,
    VerificationConfirm,
    VerificationIssuedOut,
    VerificationRequest,
)
from vecisafe.app.container import Services
from vecisafe.app.sessions.models import Session

DEVICE_TOKEN_HEADER = "X-Device-Token"

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


@router.post("", response_model=SessionOut, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    services: Services = Depends(get_services),
) -> SessionOut:
    if body.device_id:
        session, token = await services.sessions.register_device(body.device_id)
        return SessionOut.from_session(session, device_token=token)
    session = await services.sessions.create_anonymous()
    return SessionOut.from_session(session)


@router.get("/device/{device_id}", response_model=SessionOut)
async def session_for_device(
    device_id: str,
    device_token: Optional[str] = Header(None, alias=DEVICE_TOKEN_HEADER),
    services: Services = Depends(get_services),
) -> SessionOut:
    """The device's stored session, for the holder of its device token."""
    session = await services.sessions.restore_device(device_id, device_token)
    return SessionOut.from_session(session)


@router.get("/me", response_model=SessionOut)
async def get_my_session(session: Session = Depends(current_session)) -> SessionOut:
    return SessionOut.from_session(session)


@router.post(
    "/me/verification",
    response_model=VerificationIssuedOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_verification(
    body: VerificationRequest,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> VerificationIssuedOut:
    await services.sessions.request_verification(session, body.phone_number)
    return VerificationIssuedOut(
        expires_in_seconds=services.config.VERIFICATION_CODE_TTL_SECONDS,
    )


@router.post("/me/verification/confirm", response_model=SessionOut)
async def confirm_verification(
    body: VerificationConfirm,
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> SessionOut:
    verified = await services.sessions.confirm_verification(session, body.code)
    return SessionOut.from_session(verified)


@router.post("/me/sign-out", response_model=SessionOut)
async def sign_out(
    session: Session = Depends(current_session),
    services: Services = Depends(get_services),
) -> SessionOut:
    fresh = await services.sessions.sign_out(session)
    return SessionOut.from_session(fresh)
