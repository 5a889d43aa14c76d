from fastapi import APIRouter, Depends, HTTPException

from app.auth import current_user
from app.models import AvailabilityUpdate, WorkProfile, WorkProfileUpdate
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/work/me", response_model=WorkProfile)
def my_work_profile(user_id: str = Depends(current_user)):
    profile = marketplace.directory.get_profile(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Work profile not found")
    return profile


@router.put("/work", response_model=WorkProfile)
def upsert_work_profile(payload: WorkProfileUpdate, user_id: str = Depends(current_user)):
    try:
        return marketplace.directory.upsert_work_profile(provider_id=user_id, update=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/work/availability", response_model=WorkProfile)
def set_availability(payload: AvailabilityUpdate, user_id: str = Depends(current_user)):
    try:
        return marketplace.directory.set_availability(provider_id=user_id, update=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
