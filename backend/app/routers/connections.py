from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from app.auth import current_user
from app.models import ConfirmationResult, ConfirmCompletionRequest, Connection, ConnectionStatusView
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("/mine", response_model=list[Connection])
def list_my_connections(
    status: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
):
    return marketplace.connections.list_for_user(user_id=user_id, status=status)


@router.get("/pending-confirmation", response_model=list[Connection])
def list_pending_confirmation(user_id: str = Depends(current_user)):
    return marketplace.connections.list_pending_confirmation(user_id=user_id)


@router.post("/{connection_id}/confirm-completion", response_model=ConfirmationResult)
def confirm_completion(
    connection_id: str,
    payload: ConfirmCompletionRequest,
    user_id: str = Depends(current_user),
):
    try:
        return marketplace.confirmations.confirm(connection_id=connection_id, party_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/{connection_id}/status", response_model=ConnectionStatusView)
def connection_status(connection_id: str, user_id: str = Depends(current_user)):
    try:
        return marketplace.confirmations.status_view(connection_id=connection_id, viewer_id=user_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{connection_id}/cancel", response_model=Connection)
def cancel_connection(
    connection_id: str,
    reason: str = Body(default="", embed=True),
    user_id: str = Depends(current_user),
):
    try:
        return marketplace.connections.cancel(connection_id=connection_id, actor_id=user_id, reason=reason)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
