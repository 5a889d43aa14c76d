from fastapi import APIRouter, Depends

from app.auth import current_user
from app.models import RoleHistoryEntry, RoleSwitchEligibility, RoleSwitchRequest
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/roles", tags=["roles"])


@router.get("/can-switch", response_model=RoleSwitchEligibility)
def can_switch(user_id: str = Depends(current_user)):
    return marketplace.roles.can_switch(user_id)


@router.post("/switch", response_model=RoleHistoryEntry)
def switch_role(payload: RoleSwitchRequest, user_id: str = Depends(current_user)):
    try:
        return marketplace.roles.switch(user_id=user_id, new_role=payload.new_role, reason=payload.reason)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/history", response_model=list[RoleHistoryEntry])
def role_history(user_id: str = Depends(current_user)):
    return marketplace.roles.history(user_id)
