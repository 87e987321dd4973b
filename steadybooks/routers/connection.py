"""
QuickBooks connection management router.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from steadybooks.dependencies import Services, get_services
from steadybooks.models.snapshot import FinancialSnapshot
from steadybooks.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ConnectionStatusResponse(BaseModel):
    """QuickBooks connection status."""

    dashboard_id: str
    connected: bool
    status: Optional[str] = None
    realm_id: Optional[str] = None
    company_name: Optional[str] = None
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    token_expires_at: Optional[datetime] = None


class DisconnectResponse(BaseModel):
    """Disconnect response."""

    success: bool
    message: str


class SyncResponse(BaseModel):
    """Sync result; ``fallback`` tells the dashboard to keep its last figures."""

    snapshot: Optional[FinancialSnapshot] = None
    fallback: bool = False


@router.get("/{dashboard_id}/status", response_model=ConnectionStatusResponse)
async def get_connection_status(dashboard_id: str, services: Services = Depends(get_services)):
    """
    Get QuickBooks connection status for a dashboard.
    """
    logger.info("connection_status_check", dashboard_id=dashboard_id)

    connection = await services.connections.get_status(dashboard_id)
    if connection is None:
        return ConnectionStatusResponse(dashboard_id=dashboard_id, connected=False)

    return ConnectionStatusResponse(
        dashboard_id=dashboard_id,
        connected=connection.is_active,
        status=connection.status.value,
        realm_id=connection.realm_id,
        company_name=connection.company_name,
        last_sync=connection.last_sync_at,
        last_error=connection.last_error,
        token_expires_at=connection.access_token_expires_at if connection.has_tokens else None,
    )


@router.post("/{dashboard_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_quickbooks(dashboard_id: str, services: Services = Depends(get_services)):
    """
    Disconnect QuickBooks connection.
    Clears stored tokens; the dashboard must re-authorize to sync again.
    """
    logger.info("connection_disconnect", dashboard_id=dashboard_id)

    if not await services.connections.disconnect(dashboard_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dashboard has no QuickBooks connection",
        )
    return DisconnectResponse(success=True, message="Successfully disconnected from QuickBooks")


@router.post("/{dashboard_id}/sync", response_model=SyncResponse)
async def sync_dashboard(dashboard_id: str, services: Services = Depends(get_services)):
    """
    Pull fresh figures from QuickBooks.
    Returns a null snapshot with fallback=true when a sync is not possible.
    """
    snapshot = await services.orchestrator.sync(dashboard_id)
    if snapshot is None:
        return SyncResponse(snapshot=None, fallback=True)
    return SyncResponse(snapshot=snapshot)
