from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

UrgencyTier = Literal["low", "medium", "high", "emergency"]
RequestStatus = Literal["active", "in_progress", "completed", "cancelled", "expired"]
InterestStatus = Literal["pending", "accepted", "rejected", "withdrawn"]
ConnectionStatus = Literal["active", "service_in_progress", "completed", "cancelled"]
PartyRole = Literal["requester", "provider"]
Satisfaction = Literal["excellent", "good", "fair", "poor"]
AvailabilityType = Literal["online", "busy", "offline"]
SubscriptionTier = Literal["free", "basic", "premium"]
VerificationStatus = Literal["pending", "verified", "rejected"]
ConfirmationStateName = Literal["no_confirmations", "one_confirmed", "completed"]


class WorkProfile(BaseModel):
    provider_id: str
    categories: list[str] = Field(default_factory=list)
    localities: list[str] = Field(default_factory=list)
    is_available: bool = False
    availability_type: AvailabilityType = "offline"
    subscription_tier: SubscriptionTier = "free"
    verification_status: VerificationStatus = "pending"
    push_enabled: bool = True
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    about: str = ""
    is_active: bool = True
    avg_rating: Optional[float] = None
    review_count: int = 0


class WorkProfileUpdate(BaseModel):
    categories: Optional[list[str]] = None
    localities: Optional[list[str]] = None
    push_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    about: Optional[str] = None


class AvailabilityUpdate(BaseModel):
    is_available: bool
    availability_type: Optional[AvailabilityType] = None


class ServiceRequest(BaseModel):
    id: str
    requester_id: str
    category_id: str
    title: str
    description: str
    locality: str
    urgency_tier: UrgencyTier
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    status: RequestStatus
    selected_provider_id: Optional[str] = None
    interested_count: int = 0
    created_at: datetime
    expires_at: datetime
    updated_at: datetime


class AvailableRequest(ServiceRequest):
    already_interested: bool = False
    total_interests: int = 0


class ServiceRequestCreate(BaseModel):
    category_id: str
    title: str
    description: str
    locality: str
    urgency_tier: UrgencyTier = "medium"
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)


class ServiceRequestCreated(BaseModel):
    id: str
    expires_at: datetime
    notified_count: int = 0


class Interest(BaseModel):
    id: str
    request_id: str
    provider_id: str
    proposed_price: Optional[float] = None
    message: str = ""
    estimated_completion_time: Optional[str] = None
    status: InterestStatus
    viewed_by_requester: bool = False
    created_at: datetime
    updated_at: datetime


class InterestCreate(BaseModel):
    proposed_price: Optional[float] = Field(default=None, ge=0)
    message: str = ""
    estimated_completion_time: Optional[str] = None


class InterestUpdate(BaseModel):
    proposed_price: Optional[float] = Field(default=None, ge=0)
    message: Optional[str] = None
    estimated_completion_time: Optional[str] = None


class InterestSubmitted(BaseModel):
    interest_id: str


class SelectInterestRequest(BaseModel):
    interest_id: str
    agreed_price: Optional[float] = Field(default=None, ge=0)


class Connection(BaseModel):
    id: str
    requester_id: str
    provider_id: str
    request_id: Optional[str] = None
    interest_id: str
    channel_id: str
    status: ConnectionStatus
    requester_confirmed: bool = False
    provider_confirmed: bool = False
    requester_confirmed_at: Optional[datetime] = None
    provider_confirmed_at: Optional[datetime] = None
    agreed_price: Optional[float] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None


class SelectionResult(BaseModel):
    connection_id: str
    channel_id: str
    request_id: str
    provider_id: str


class CompletionConfirmation(BaseModel):
    id: str
    connection_id: str
    party_id: str
    role: PartyRole
    satisfaction: Satisfaction = "good"
    satisfaction_note: str = ""
    evidence_flag: bool = False
    confirmed_at: datetime


class ConfirmCompletionRequest(BaseModel):
    note: str = ""
    satisfaction: Satisfaction = "good"
    evidence: bool = False


class ConfirmationResult(BaseModel):
    both_confirmed: bool
    state: ConfirmationStateName
    connection: Connection


class PartyConfirmationView(BaseModel):
    confirmed: bool
    confirmed_at: Optional[datetime] = None
    note: Optional[str] = None
    satisfaction: Optional[Satisfaction] = None
    evidence_flag: Optional[bool] = None


class ConnectionStatusView(BaseModel):
    connection: Connection
    state: ConfirmationStateName
    viewer_role: PartyRole
    both_confirmed: bool
    viewer_confirmed: bool
    partner_confirmed: bool
    service_completed: bool
    confirmations: Dict[str, PartyConfirmationView]


class ReviewObligation(BaseModel):
    id: str
    owner_id: str
    owner_role: PartyRole
    connection_id: str
    counterparty_id: str
    due_at: datetime
    created_at: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    review_id: Optional[str] = None
    blocking: bool = False


class BlockingStatus(BaseModel):
    blocked: bool
    count: int
    reasons: list[str] = Field(default_factory=list)


class Review(BaseModel):
    id: str
    connection_id: str
    author_id: str
    author_role: PartyRole
    subject_id: str
    rating: int = Field(ge=1, le=5)
    comment: str
    dimensions: Dict[str, int] = Field(default_factory=dict)
    would_engage_again: bool = True
    created_at: datetime
    updated_at: datetime
    editable_until: datetime


class ReviewCreate(BaseModel):
    connection_id: str
    rating: int
    comment: str
    dimensions: Dict[str, int] = Field(default_factory=dict)
    would_engage_again: bool = True


class ReviewUpdate(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None
    dimensions: Optional[Dict[str, int]] = None
    would_engage_again: Optional[bool] = None


class RoleSwitchRequest(BaseModel):
    new_role: PartyRole
    reason: str = ""


class RoleSwitchEligibility(BaseModel):
    can_switch: bool
    current_role: PartyRole
    target_role: PartyRole
    reasons: list[str] = Field(default_factory=list)
    advisories: list[str] = Field(default_factory=list)


class RoleHistoryEntry(BaseModel):
    id: str
    user_id: str
    old_role: PartyRole
    new_role: PartyRole
    reason: str
    switched_at: datetime


class DispatchReport(BaseModel):
    request_id: str
    eligible: int = 0
    queued: int = 0
    skipped_duplicates: int = 0
    ranked_provider_ids: list[str] = Field(default_factory=list)


class SweepReport(BaseModel):
    expired_requests: int = 0
    obligations_now_blocking: int = 0


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "marketplace-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: PartyRole


class DeviceTokenRegisterRequest(BaseModel):
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["request", "interest", "connection", "review", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


class RealtimeEvent(BaseModel):
    seq: int
    user_id: str
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class RealtimeEventPage(BaseModel):
    events: List[RealtimeEvent] = Field(default_factory=list)
    last_seq: int = 0
