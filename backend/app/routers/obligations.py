from fastapi import APIRouter, Depends

from app.auth import current_user
from app.models import BlockingStatus, ReviewObligation
from app.services.marketplace import marketplace

router = APIRouter(prefix="/obligations", tags=["obligations"])


@router.get("/blocking-status", response_model=BlockingStatus)
def blocking_status(user_id: str = Depends(current_user)):
    return marketplace.gate.blocking_status(user_id)


@router.get("/pending", response_model=list[ReviewObligation])
def pending_obligations(user_id: str = Depends(current_user)):
    return marketplace.gate.list_pending(user_id)
