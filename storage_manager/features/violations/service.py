"""
Violation accrual engine.

A violation accrues a daily charge once the configured grace period after its
start has elapsed. Partial days bill as whole days (ceiling over 86400s) and
money is rounded half-up to cents once, at the end.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, List, Optional, Union

from storage_manager.core.config import StorageConfig
from storage_manager.core.errors import ValidationError
from storage_manager.core.logging import log_event
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.models.storage import Assignment, Violation, ensure_utc, utc_now


CENTS = Decimal("0.01")
SECONDS_PER_DAY = 86400

RateInput = Union[Decimal, str, int, float, None]

# Marks an omitted keyword, distinct from an explicit None that clears a value
UNSET: Any = object()


def _to_rate(value: RateInput) -> Optional[Decimal]:
    """Parse a rate input; None or "" means not provided."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        rate = Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"Invalid daily rate: {value!r}") from e
    if not rate.is_finite():
        raise ValidationError(f"Invalid daily rate: {value!r}")
    return rate


class ViolationService:
    def __init__(
        self,
        config: StorageConfig,
        repository: StorageRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.repository = repository
        self.clock = clock

    @property
    def default_daily_rate(self) -> Decimal:
        return Decimal(self.config.default_daily_rate or 0)

    def load_active_violation(self, assignment_id: int) -> Optional[Violation]:
        return self.repository.find_active_violation(assignment_id)

    def load_violations(self, assignment_id: int) -> List[Violation]:
        """All violations of an assignment, newest start first."""
        return self.repository.list_violations(assignment_id)

    def start_violation(
        self,
        assignment: Assignment,
        start: Optional[datetime] = None,
        daily_rate: RateInput = None,
        note: str = "",
    ) -> Violation:
        """Open a violation; an assignment holds at most one active violation."""
        existing = self.repository.find_active_violation(assignment.id)
        if existing is not None:
            raise ValidationError(
                f"Storage assignment {assignment.id} already has an active violation ({existing.id})"
            )

        rate = _to_rate(daily_rate)
        if rate is None:
            rate = self.default_daily_rate
        if rate < 0:
            raise ValidationError("Daily rate cannot be negative")

        violation = self.repository.create_violation(
            assignment.id,
            ensure_utc(start) if start is not None else self.clock(),
            rate,
            (note or "").strip(),
        )
        log_event(
            "info",
            "violation.started",
            assignment_id=assignment.id,
            extra={"violation_id": violation.id, "daily_rate": str(rate)},
        )
        return violation

    def update_violation(
        self,
        violation: Violation,
        *,
        daily_rate: RateInput = UNSET,
        note: Optional[str] = None,
    ) -> Violation:
        """Edit an active violation; an explicit None or "" rate clears it back to the default."""
        if not violation.active:
            raise ValidationError("Resolved violations cannot be edited")

        if daily_rate is not UNSET:
            rate = _to_rate(daily_rate)
            if rate is not None and rate < 0:
                raise ValidationError("Daily rate cannot be negative")
            violation.daily_rate = rate
        if note is not None:
            violation.note = note.strip()
        self.repository.save_violation(violation)
        return violation

    def calculate_accrued_charge(self, violation: Violation, as_of: Optional[datetime] = None) -> Decimal:
        rate = violation.daily_rate
        if rate is None or rate <= 0:
            rate = self.default_daily_rate
        if rate <= 0 or violation.start is None:
            return Decimal("0.00")

        chargeable_start = ensure_utc(violation.start) + timedelta(hours=self.config.grace_period_hours)
        end = ensure_utc(as_of) if as_of is not None else self.clock()
        if end <= chargeable_start:
            return Decimal("0.00")

        seconds = (end - chargeable_start).total_seconds()
        days = max(math.ceil(seconds / SECONDS_PER_DAY), 1)
        return (Decimal(days) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def finalize_violation(self, violation: Violation, resolved_at: Optional[datetime] = None) -> Decimal:
        """Resolve a violation and record its total. Returns the total due."""
        if not violation.active:
            raise ValidationError("Violation already finalized")

        resolved_at = ensure_utc(resolved_at) if resolved_at is not None else self.clock()

        if violation.daily_rate is None and self.default_daily_rate > 0:
            violation.daily_rate = self.default_daily_rate

        total = self.calculate_accrued_charge(violation, resolved_at)
        violation.active = False
        violation.resolved_at = resolved_at
        violation.total_due = total
        self.repository.save_violation(violation)

        log_event(
            "info",
            "violation.finalized",
            assignment_id=violation.assignment_id,
            extra={"violation_id": violation.id, "total_due": str(total)},
        )
        return total
