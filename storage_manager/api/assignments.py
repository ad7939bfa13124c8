"""
Storage assignment routes.

- POST /v1/storage/units/{unit_id}/assign
- POST /v1/storage/units/{unit_id}/release
- POST /v1/storage/assignments/{assignment_id}/billing/sync
- POST /v1/storage/assignments/{assignment_id}/billing/link
- POST /v1/storage/assignments/{assignment_id}/manual-review/confirm
- GET  /v1/storage/members/{member_id}/billing/candidates
"""
from typing import List, Optional

from fastapi import APIRouter, Depends

from storage_manager.api.deps import (
    get_assignment_service,
    get_escalator,
    get_reconciler,
    get_repository,
)
from storage_manager.api.schemas import (
    AssignRequest,
    AssignmentOut,
    CandidateItem,
    ConfirmRequest,
    ConfirmResponse,
    LifecycleResponse,
    LinkCandidateOut,
    LinkRequest,
    ReleaseRequest,
)
from storage_manager.core.errors import BillingDisabledError, NotFoundError
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.assignments.service import AssignmentService, LifecycleOutcome
from storage_manager.features.billing.manual_review import ManualReviewEscalator
from storage_manager.features.billing.provider import RemoteItem
from storage_manager.features.billing.reconciliation import BillingReconciler
from storage_manager.models.storage import Assignment


router = APIRouter(prefix="/v1/storage", tags=["storage"])


def _load_assignment(repository: StorageRepository, assignment_id: int) -> Assignment:
    assignment = repository.get_assignment(assignment_id)
    if assignment is None:
        raise NotFoundError(f"Storage assignment {assignment_id} not found")
    return assignment


def _require_billing(reconciler: BillingReconciler) -> None:
    if not reconciler.is_enabled():
        raise BillingDisabledError("Stripe billing is disabled")


def _lifecycle_response(outcome: LifecycleOutcome) -> LifecycleResponse:
    return LifecycleResponse(
        assignment=AssignmentOut.model_validate(outcome.assignment),
        violation_total=outcome.violation_total,
        billing_warning=outcome.billing_warning,
    )


def _item_label(item: RemoteItem) -> str:
    product = item.product_name or item.price_nickname or "Unknown product"
    return f"{product} ({item.price_id}, qty {item.quantity})"


@router.post("/units/{unit_id}/assign", response_model=LifecycleResponse)
def assign_unit(
    unit_id: int,
    request: AssignRequest,
    service: AssignmentService = Depends(get_assignment_service),
):
    """
    Assign a unit to a member.

    Billing sync failures do not undo the assignment; they are returned as
    `billing_warning` and the assignment is flagged for manual review.

    Errors:
        404: Unit or member not found
        409: Unit already has an active assignment
    """
    outcome = service.assign_unit(
        unit_id,
        request.member_id,
        start_date=request.start_date,
        price_id=request.price_id,
        complimentary=request.complimentary,
    )
    return _lifecycle_response(outcome)


@router.post("/units/{unit_id}/release", response_model=LifecycleResponse)
def release_unit(
    unit_id: int,
    request: Optional[ReleaseRequest] = None,
    service: AssignmentService = Depends(get_assignment_service),
):
    """End the unit's active assignment and finalize any open violation."""
    end_date = request.end_date if request else None
    outcome = service.release_unit(unit_id, end_date=end_date)
    return _lifecycle_response(outcome)


@router.post("/assignments/{assignment_id}/billing/sync", response_model=AssignmentOut)
def sync_assignment(
    assignment_id: int,
    repository: StorageRepository = Depends(get_repository),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """
    Re-run billing reconciliation for an assignment.

    Safe to repeat. Errors:
        422: Missing price or customer
        502: Stripe rejected a call or the item vanished
        503: Billing disabled
    """
    _require_billing(reconciler)
    assignment = _load_assignment(repository, assignment_id)
    reconciler.sync_assignment(assignment)
    return AssignmentOut.model_validate(assignment)


@router.post("/assignments/{assignment_id}/billing/link", response_model=AssignmentOut)
def link_assignment(
    assignment_id: int,
    request: LinkRequest,
    repository: StorageRepository = Depends(get_repository),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """Attach an assignment to an existing Stripe subscription item."""
    _require_billing(reconciler)
    assignment = _load_assignment(repository, assignment_id)
    reconciler.link_assignment_to_item(assignment, request.subscription_id, request.item_id)
    return AssignmentOut.model_validate(assignment)


@router.post("/assignments/{assignment_id}/manual-review/confirm", response_model=ConfirmResponse)
def confirm_manual_review(
    assignment_id: int,
    request: ConfirmRequest,
    repository: StorageRepository = Depends(get_repository),
    escalator: ManualReviewEscalator = Depends(get_escalator),
):
    """Staff confirmation that Stripe billing was fixed by hand."""
    changed = escalator.confirm(assignment_id, request.note)
    assignment = _load_assignment(repository, assignment_id)
    return ConfirmResponse(changed=changed, assignment=AssignmentOut.model_validate(assignment))


@router.get("/members/{member_id}/billing/candidates", response_model=List[LinkCandidateOut])
def list_link_candidates(
    member_id: int,
    repository: StorageRepository = Depends(get_repository),
    reconciler: BillingReconciler = Depends(get_reconciler),
):
    """Unlinked Stripe items that could back the member's unlinked assignments."""
    _require_billing(reconciler)
    member = repository.get_member(member_id)
    if member is None:
        raise NotFoundError(f"Member {member_id} not found")

    return [
        LinkCandidateOut(
            assignment_id=candidate.assignment.id,
            price_id=candidate.price_id,
            items=[
                CandidateItem(
                    id=item.id,
                    subscription_id=item.subscription_id,
                    price_id=item.price_id,
                    quantity=item.quantity,
                    label=_item_label(item),
                )
                for item in candidate.items
            ],
            suggested_item_id=candidate.suggested_item.id if candidate.suggested_item else None,
        )
        for candidate in reconciler.find_link_candidates(member)
    ]
