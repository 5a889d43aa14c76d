from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.auth import current_user
from app.models import Interest, InterestUpdate
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/interests", tags=["interests"])


@router.get("/mine", response_model=list[Interest])
def list_my_interests(
    status: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
):
    return marketplace.ledger.list_for_provider(provider_id=user_id, status=status)


@router.patch("/{interest_id}", response_model=Interest)
def update_interest(interest_id: str, payload: InterestUpdate, user_id: str = Depends(current_user)):
    try:
        return marketplace.ledger.update(interest_id=interest_id, provider_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{interest_id}/withdraw", response_model=Interest)
def withdraw_interest(interest_id: str, user_id: str = Depends(current_user)):
    try:
        return marketplace.ledger.withdraw(interest_id=interest_id, provider_id=user_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
