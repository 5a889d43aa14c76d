from fastapi import APIRouter, Depends

from app.auth import current_user
from app.models import SweepReport
from app.routers.common import raise_marketplace_http_error
from app.services.errors import MarketplaceError
from app.services.marketplace import marketplace

router = APIRouter(prefix="/system", tags=["system"])


@router.post("/sweep", response_model=SweepReport)
def run_sweeps(user_id: str = Depends(current_user)):
    try:
        return marketplace.run_sweeps()
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
