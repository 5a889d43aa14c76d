from typing import NoReturn

from fastapi import HTTPException

from app.services.errors import (
    BlockedError,
    MarketplaceConflictError,
    MarketplaceError,
    MarketplaceExpiredError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceUnavailableError,
)


def raise_marketplace_http_error(exc: MarketplaceError) -> NoReturn:
    if isinstance(exc, MarketplaceNotFoundError):
        raise HTTPException(status_code=404, detail=exc.to_payload())
    if isinstance(exc, (BlockedError, MarketplacePermissionError)):
        raise HTTPException(status_code=403, detail=exc.to_payload())
    if isinstance(exc, MarketplaceConflictError):
        raise HTTPException(status_code=409, detail=exc.to_payload())
    if isinstance(exc, MarketplaceExpiredError):
        raise HTTPException(status_code=410, detail=exc.to_payload())
    if isinstance(exc, MarketplaceUnavailableError):
        raise HTTPException(status_code=503, detail=exc.to_payload())
    raise HTTPException(status_code=400, detail=exc.to_payload())
