from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.auth import current_user
from app.models import (
    AvailableRequest,
    Interest,
    InterestCreate,
    InterestSubmitted,
    SelectInterestRequest,
    SelectionResult,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestCreated,
)
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequestCreated, status_code=201)
def create_request(payload: ServiceRequestCreate, user_id: str = Depends(current_user)):
    try:
        request, report = marketplace.registry.create(requester_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
    return ServiceRequestCreated(id=request.id, expires_at=request.expires_at, notified_count=report.queued)


@router.get("/mine", response_model=list[ServiceRequest])
def list_my_requests(
    status: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
):
    try:
        return marketplace.registry.list_for_requester(requester_id=user_id, status=status)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/available", response_model=list[AvailableRequest])
def list_available_requests(
    category_id: Optional[str] = Query(default=None),
    locality: Optional[str] = Query(default=None),
    urgency: Optional[str] = Query(default=None),
    min_budget: Optional[float] = Query(default=None, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(current_user),
):
    try:
        return marketplace.registry.list_open_for_provider(
            provider_id=user_id,
            category_id=category_id,
            locality=locality,
            urgency=urgency,
            min_budget=min_budget,
            limit=limit,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/{request_id}", response_model=ServiceRequest)
def get_request(request_id: str, user_id: str = Depends(current_user)):
    try:
        return marketplace.registry.get(request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(request_id: str, user_id: str = Depends(current_user)):
    try:
        return marketplace.registry.cancel(request_id=request_id, actor_id=user_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{request_id}/interests", response_model=InterestSubmitted)
def submit_interest(request_id: str, payload: InterestCreate, user_id: str = Depends(current_user)):
    try:
        interest = marketplace.ledger.submit(request_id=request_id, provider_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
    return InterestSubmitted(interest_id=interest.id)


@router.get("/{request_id}/interests", response_model=list[Interest])
def list_request_interests(request_id: str, user_id: str = Depends(current_user)):
    try:
        return marketplace.ledger.list_for_request(request_id=request_id, owner_id=user_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{request_id}/select", response_model=SelectionResult)
def select_interest(request_id: str, payload: SelectInterestRequest, user_id: str = Depends(current_user)):
    try:
        return marketplace.registry.select(
            request_id=request_id,
            interest_id=payload.interest_id,
            actor_id=user_id,
            agreed_price=payload.agreed_price,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
