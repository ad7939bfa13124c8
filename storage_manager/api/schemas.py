"""Request and response models for the storage API."""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storage_manager.models.storage import AssignmentStatus, ViolationState


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    unit_id: int
    member_id: int
    status: AssignmentStatus
    start_date: date
    end_date: Optional[date] = None
    price_snapshot: Optional[Decimal] = None
    complimentary: bool
    stripe_price_id: str
    stripe_subscription_id: str
    stripe_item_id: str
    stripe_status: str
    manual_review: bool
    manual_review_note: str


class ViolationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    assignment_id: int
    active: bool
    state: ViolationState
    start: datetime
    daily_rate: Optional[Decimal] = None
    resolved_at: Optional[datetime] = None
    total_due: Optional[Decimal] = None
    note: str
    accrued: Optional[Decimal] = None


class AssignRequest(BaseModel):
    member_id: int
    start_date: Optional[date] = None
    price_id: Optional[str] = None
    complimentary: bool = False


class ReleaseRequest(BaseModel):
    end_date: Optional[date] = None


class LifecycleResponse(BaseModel):
    assignment: AssignmentOut
    violation_total: Optional[Decimal] = None
    billing_warning: Optional[str] = None


class LinkRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)


class ConfirmRequest(BaseModel):
    note: str = ""


class ConfirmResponse(BaseModel):
    changed: bool
    assignment: AssignmentOut


class CandidateItem(BaseModel):
    id: str
    subscription_id: Optional[str] = None
    price_id: str
    quantity: int
    label: str


class LinkCandidateOut(BaseModel):
    assignment_id: int
    price_id: str
    items: List[CandidateItem]
    suggested_item_id: Optional[str] = None


class StartViolationRequest(BaseModel):
    start: Optional[datetime] = None
    daily_rate: Optional[Decimal] = None
    note: str = ""


class UpdateViolationRequest(BaseModel):
    daily_rate: Optional[Decimal] = None
    note: Optional[str] = None


class FinalizeViolationRequest(BaseModel):
    resolved_at: Optional[datetime] = None


class FinalizeViolationResponse(BaseModel):
    violation: ViolationOut
    total_due: Decimal


class AccruedResponse(BaseModel):
    violation_id: int
    as_of: datetime
    accrued: Decimal
