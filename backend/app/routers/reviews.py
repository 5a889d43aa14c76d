from fastapi import APIRouter, Depends

from app.auth import current_user
from app.models import Review, ReviewCreate, ReviewUpdate
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("", response_model=Review, status_code=201)
def submit_review(payload: ReviewCreate, user_id: str = Depends(current_user)):
    try:
        return marketplace.reviews.submit(author_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.patch("/{review_id}", response_model=Review)
def update_review(review_id: str, payload: ReviewUpdate, user_id: str = Depends(current_user)):
    try:
        return marketplace.reviews.update(review_id=review_id, author_id=user_id, payload=payload)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/mine", response_model=list[Review])
def list_my_reviews(user_id: str = Depends(current_user)):
    return marketplace.reviews.list_by_author(user_id)


@router.get("/subject/{subject_id}", response_model=list[Review])
def list_subject_reviews(subject_id: str):
    return marketplace.reviews.list_for_subject(subject_id)
