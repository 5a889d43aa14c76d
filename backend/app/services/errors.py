from typing import Any, Dict, List, Optional


class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""

    kind = "error"
    default_remediation = "Please review the request and try again."

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation or self.default_remediation

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "remediation": self.remediation}


class MarketplaceValidationError(MarketplaceError):
    kind = "validation_error"
    default_remediation = "Correct the highlighted fields and resubmit."


class MarketplaceNotFoundError(MarketplaceError):
    kind = "not_found"
    default_remediation = "Check the identifier or refresh your list."


class MarketplaceConflictError(MarketplaceError):
    kind = "conflict"
    default_remediation = "Refresh to see the latest state before retrying."


class MarketplacePermissionError(MarketplaceError):
    kind = "forbidden"
    default_remediation = "This action is not available for your account or role."


class MarketplaceExpiredError(MarketplaceError):
    kind = "expired"
    default_remediation = "This request is no longer accepting interest."


class MarketplaceUnavailableError(MarketplaceError):
    kind = "unavailable"
    default_remediation = "The service is busy. Please retry in a moment."


class BlockedError(MarketplaceError):
    kind = "blocked"

    def __init__(self, message: str, *, count: int, reasons: List[str], remediation: Optional[str] = None) -> None:
        super().__init__(message, remediation=remediation)
        self.count = count
        self.reasons = list(reasons)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({"blocked": True, "count": self.count, "reasons": self.reasons})
        return payload
