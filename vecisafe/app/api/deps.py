"""
FastAPI dependencies shared by the v1 routers.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from vecisafe.app.container import Services
from vecisafe.app.core.errors import NotFoundError, UnauthenticatedError
from vecisafe.app.core.logging_config import update_request_context
from vecisafe.app.core.middleware import SESSION_HEADER
from vecisafe.app.sessions.models import Session


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_session(
    session_id: Optional[str] = Header(None, alias=SESSION_HEADER),
    services: Services = Depends(get_services),
) -> Session:
    """Resolve the caller's session from the X-Session-ID header."""
    if not session_id:
        raise UnauthenticatedError(f"{SESSION_HEADER} header is required")
    try:
        session = await services.sessions.get(session_id)
    except NotFoundError:
        raise UnauthenticatedError("Unknown or retired session") from None
    update_request_context(session_phase=session.phase.value)
    return session
