"""
QuickBooks OAuth2 router: start authorization and handle the Intuit callback.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel

from steadybooks.connectors.connection_service import CallbackResult
from steadybooks.dependencies import Services, get_services
from steadybooks.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

CSRF_COOKIE_NAME = "qbo_oauth_state"
CSRF_COOKIE_MAX_AGE = 600


class OAuthInitResponse(BaseModel):
    """OAuth2 initialization response."""

    authorization_url: str
    dashboard_id: str


@router.get("/authorize", response_model=OAuthInitResponse)
async def initiate_oauth(
    response: Response,
    dashboard_id: str = Query(..., min_length=1, description="Dashboard to connect"),
    services: Services = Depends(get_services),
):
    """
    Initiate OAuth2 flow with QuickBooks.
    Returns the authorization URL and stores the CSRF state in an HttpOnly cookie.
    """
    start = services.connections.start_authorization(dashboard_id)

    response.set_cookie(
        CSRF_COOKIE_NAME,
        start.csrf_state,
        max_age=CSRF_COOKIE_MAX_AGE,
        httponly=True,
        secure=not services.settings.dev_mode,
        samesite="lax",
    )

    logger.info("oauth_initiated", dashboard_id=dashboard_id)
    return OAuthInitResponse(authorization_url=start.authorization_url, dashboard_id=dashboard_id)


@router.get("/callback", response_model=CallbackResult)
async def oauth_callback(
    request: Request,
    response: Response,
    code: Optional[str] = Query(None, description="Authorization code from Intuit"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    realmId: Optional[str] = Query(None, description="QuickBooks company ID"),
    error: Optional[str] = Query(None, description="OAuth error code"),
    services: Services = Depends(get_services),
):
    """
    OAuth2 callback endpoint.
    Exchanges the authorization code for tokens and stores the connection.
    Failures are reported in the body, never as HTTP errors.
    """
    result = await services.connections.complete_authorization(
        code=code,
        state=state,
        realm_id=realmId,
        error=error,
        expected_csrf_state=request.cookies.get(CSRF_COOKIE_NAME),
    )
    response.delete_cookie(CSRF_COOKIE_NAME)
    return result
