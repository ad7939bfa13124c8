"""
Storage violation routes.

- POST  /v1/storage/assignments/{assignment_id}/violations
- GET   /v1/storage/assignments/{assignment_id}/violations
- PATCH /v1/storage/violations/{violation_id}
- POST  /v1/storage/violations/{violation_id}/finalize
- GET   /v1/storage/violations/{violation_id}/accrued
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from storage_manager.api.deps import get_notifications, get_repository, get_violation_service
from storage_manager.api.schemas import (
    AccruedResponse,
    FinalizeViolationRequest,
    FinalizeViolationResponse,
    StartViolationRequest,
    UpdateViolationRequest,
    ViolationOut,
)
from storage_manager.core.errors import NotFoundError, ValidationError
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.notifications.service import NotificationService
from storage_manager.features.violations.service import UNSET, ViolationService
from storage_manager.models.storage import Violation, ensure_utc, utc_now


router = APIRouter(prefix="/v1/storage", tags=["violations"])


def _load_violation(repository: StorageRepository, violation_id: int) -> Violation:
    violation = repository.get_violation(violation_id)
    if violation is None:
        raise NotFoundError(f"Violation {violation_id} not found")
    return violation


def _violation_out(violation: Violation, service: ViolationService) -> ViolationOut:
    accrued = service.calculate_accrued_charge(violation) if violation.active else violation.total_due
    return ViolationOut.model_validate(violation).model_copy(update={"accrued": accrued})


@router.post("/assignments/{assignment_id}/violations", response_model=ViolationOut, status_code=201)
def start_violation(
    assignment_id: int,
    request: StartViolationRequest,
    repository: StorageRepository = Depends(get_repository),
    service: ViolationService = Depends(get_violation_service),
    notifications: NotificationService = Depends(get_notifications),
):
    """
    Open a violation on an active assignment.

    Errors:
        400: Assignment not active, or it already has an active violation
        404: Assignment not found
    """
    assignment = repository.get_assignment(assignment_id)
    if assignment is None:
        raise NotFoundError(f"Storage assignment {assignment_id} not found")
    if not assignment.is_active:
        raise ValidationError("Violations can only be opened on active assignments")

    violation = service.start_violation(
        assignment,
        start=request.start,
        daily_rate=request.daily_rate,
        note=request.note,
    )
    notifications.send_event("violation_warning", {"assignment": assignment, "violation": violation})
    return _violation_out(violation, service)


@router.get("/assignments/{assignment_id}/violations", response_model=List[ViolationOut])
def list_violations(
    assignment_id: int,
    service: ViolationService = Depends(get_violation_service),
):
    return [_violation_out(v, service) for v in service.load_violations(assignment_id)]


@router.patch("/violations/{violation_id}", response_model=ViolationOut)
def update_violation(
    violation_id: int,
    request: UpdateViolationRequest,
    repository: StorageRepository = Depends(get_repository),
    service: ViolationService = Depends(get_violation_service),
):
    violation = _load_violation(repository, violation_id)
    daily_rate = request.daily_rate if "daily_rate" in request.model_fields_set else UNSET
    service.update_violation(violation, daily_rate=daily_rate, note=request.note)
    return _violation_out(violation, service)


@router.post("/violations/{violation_id}/finalize", response_model=FinalizeViolationResponse)
def finalize_violation(
    violation_id: int,
    request: Optional[FinalizeViolationRequest] = None,
    repository: StorageRepository = Depends(get_repository),
    service: ViolationService = Depends(get_violation_service),
    notifications: NotificationService = Depends(get_notifications),
):
    """
    Resolve a violation and record the total due.

    Sends `violation_resolved`, plus `violation_fine` when the total is above zero.

    Errors:
        400: Violation already finalized
        404: Violation not found
    """
    violation = _load_violation(repository, violation_id)
    total = service.finalize_violation(violation, request.resolved_at if request else None)

    assignment = repository.get_assignment(violation.assignment_id)
    if assignment is not None:
        context = {"assignment": assignment, "violation": violation, "violation_total": total}
        notifications.send_event("violation_resolved", context)
        if total > 0:
            notifications.send_event("violation_fine", context)

    return FinalizeViolationResponse(violation=_violation_out(violation, service), total_due=total)


@router.get("/violations/{violation_id}/accrued", response_model=AccruedResponse)
def accrued_charge(
    violation_id: int,
    as_of: Optional[datetime] = Query(None),
    repository: StorageRepository = Depends(get_repository),
    service: ViolationService = Depends(get_violation_service),
):
    violation = _load_violation(repository, violation_id)
    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    return AccruedResponse(
        violation_id=violation.id,
        as_of=as_of,
        accrued=service.calculate_accrued_charge(violation, as_of),
    )
