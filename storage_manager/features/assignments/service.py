"""
Assignment lifecycle.

Assigning and releasing units is the event that drives billing. Occupancy is
committed first; billing runs best-effort afterwards and its failures are
reported on the outcome (the assignment is already flagged for manual review
by the reconciler).
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional

from storage_manager.core.errors import AppError, ConflictError, NotFoundError, ValidationError
from storage_manager.core.logging import log_event
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.billing.reconciliation import BillingReconciler
from storage_manager.features.notifications.service import NotificationService
from storage_manager.features.violations.service import ViolationService
from storage_manager.models.storage import Assignment, AssignmentStatus, UnitStatus, utc_now


logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)


@dataclass
class LifecycleOutcome:
    assignment: Assignment
    violation_total: Optional[Decimal] = None
    billing_warning: Optional[str] = None


class AssignmentGuard:
    """One active assignment per unit."""

    def __init__(self, repository: StorageRepository):
        self.repository = repository

    def ensure_unit_available(self, unit_id: int) -> None:
        existing = self.repository.find_active_assignment_for_unit(unit_id)
        if existing is not None:
            raise ConflictError(
                f"Storage unit {unit_id} already has an active assignment ({existing.id})"
            )


class AssignmentService:
    def __init__(
        self,
        repository: StorageRepository,
        reconciler: BillingReconciler,
        violations: ViolationService,
        notifications: NotificationService,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.violations = violations
        self.notifications = notifications
        self.guard = AssignmentGuard(repository)

    def assign_unit(
        self,
        unit_id: int,
        member_id: int,
        start_date: Optional[date] = None,
        price_id: Optional[str] = None,
        complimentary: bool = False,
    ) -> LifecycleOutcome:
        unit = self.repository.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"Storage unit {unit_id} not found")
        member = self.repository.get_member(member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found")
        self.guard.ensure_unit_available(unit_id)

        storage_type = self.repository.get_type(unit.type_id)
        assignment = self.repository.create_assignment(
            unit_id,
            member_id,
            start_date or utc_now().date(),
            price_snapshot=storage_type.monthly_price if storage_type else None,
            complimentary=complimentary,
            stripe_price_id=(price_id or "").strip(),
        )
        self.repository.set_unit_status(unit_id, UnitStatus.OCCUPIED)
        log_event("info", "assignment.created", assignment_id=assignment.id, extra={"unit_id": unit_id, "member_id": member_id})

        self.notifications.send_event("assignment", {"assignment": assignment})

        outcome = LifecycleOutcome(assignment=assignment)
        if self.reconciler.is_enabled():
            try:
                self.reconciler.sync_assignment(assignment)
            except AppError as e:
                outcome.billing_warning = e.message
                logger.warning(
                    "[assignments] billing sync failed after assignment",
                    extra={"assignment_id": assignment.id, "error": e.message},
                )
        return outcome

    def release_unit(self, unit_id: int, end_date: Optional[date] = None) -> LifecycleOutcome:
        assignment = self.repository.find_active_assignment_for_unit(unit_id)
        if assignment is None:
            raise NotFoundError(f"Storage unit {unit_id} has no active assignment")

        end_date = end_date or utc_now().date()
        if end_date < assignment.start_date:
            raise ValidationError("Release date cannot be before the assignment start date")

        assignment.status = AssignmentStatus.ENDED
        assignment.end_date = end_date
        self.repository.save_assignment(assignment)

        violation = self.violations.load_active_violation(assignment.id)
        violation_total = None
        if violation is not None:
            resolved_at = datetime.combine(end_date, END_OF_DAY, tzinfo=timezone.utc)
            violation_total = self.violations.finalize_violation(violation, resolved_at)

        context = {
            "assignment": assignment,
            "release_date": end_date.isoformat(),
        }
        self.notifications.send_event("release", context)
        if violation is not None:
            context = dict(context, violation=violation, violation_total=violation_total)
            self.notifications.send_event("violation_resolved", context)
            if violation_total > 0:
                self.notifications.send_event("violation_fine", context)

        self.repository.set_unit_status(unit_id, UnitStatus.VACANT)

        outcome = LifecycleOutcome(assignment=assignment, violation_total=violation_total)
        if self.reconciler.is_enabled():
            try:
                self.reconciler.release_assignment(assignment)
            except AppError as e:
                outcome.billing_warning = e.message
                logger.warning(
                    "[assignments] billing release failed",
                    extra={"assignment_id": assignment.id, "error": e.message},
                )

        log_event("info", "assignment.released", assignment_id=assignment.id, extra={"unit_id": unit_id})
        return outcome
