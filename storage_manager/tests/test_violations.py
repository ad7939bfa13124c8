"""
Violation accrual: grace period, whole-day ceiling, half-up cents rounding.
"""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storage_manager.core.errors import ValidationError
from storage_manager.features.violations.service import ViolationService
from storage_manager.models.storage import Violation, ViolationState


T = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)


def _violation(daily_rate=None, start=T):
    return Violation(id=1, assignment_id=1, active=True, start=start, daily_rate=daily_rate)


@pytest.mark.parametrize(
    "hours, expected",
    [
        (0, "0.00"),
        (47, "0.00"),
        (48, "0.00"),
        (49, "2.00"),
        (72, "2.00"),
        (73, "4.00"),
    ],
)
def test_accrual_after_grace_period(violations, hours, expected):
    charge = violations.calculate_accrued_charge(_violation(Decimal("2.00")), T + timedelta(hours=hours))
    assert charge == Decimal(expected)


def test_partial_day_bills_as_full_day(violations):
    charge = violations.calculate_accrued_charge(_violation(Decimal("3.50")), T + timedelta(hours=48, seconds=1))
    assert charge == Decimal("3.50")


def test_missing_or_zero_rate_uses_default(violations):
    as_of = T + timedelta(hours=73)
    assert violations.calculate_accrued_charge(_violation(None), as_of) == Decimal("4.00")
    assert violations.calculate_accrued_charge(_violation(Decimal("0")), as_of) == Decimal("4.00")


def test_no_rate_anywhere_accrues_nothing(config, repository):
    service = ViolationService(replace(config, default_daily_rate=Decimal("0")), repository)
    assert service.calculate_accrued_charge(_violation(None), T + timedelta(days=30)) == Decimal("0.00")


def test_result_rounds_half_up_to_cents(violations):
    charge = violations.calculate_accrued_charge(_violation(Decimal("0.125")), T + timedelta(hours=49))
    assert charge == Decimal("0.13")
    assert str(charge) == "0.13"


def test_grace_period_is_configurable(config, repository):
    service = ViolationService(replace(config, grace_period_hours=0), repository)
    assert service.calculate_accrued_charge(_violation(Decimal("2.00")), T + timedelta(hours=1)) == Decimal("2.00")


def test_naive_as_of_is_treated_as_utc(violations):
    naive = datetime(2024, 3, 4, 13)
    assert violations.calculate_accrued_charge(_violation(Decimal("2.00")), naive) == Decimal("4.00")


def test_start_violation_defaults(violations, make_assignment):
    assignment = make_assignment()

    violation = violations.start_violation(assignment, start=datetime(2024, 3, 1, 12), note="  boxes in aisle ")

    assert violation.active is True
    assert violation.state == ViolationState.ACTIVE
    assert violation.start == T
    assert violation.daily_rate == Decimal("2.00")
    assert violation.note == "boxes in aisle"


def test_start_violation_uses_clock(config, repository, make_assignment):
    service = ViolationService(config, repository, clock=lambda: T)
    assignment = make_assignment()

    violation = service.start_violation(assignment)

    assert violation.start == T
    assert service.calculate_accrued_charge(violation) == Decimal("0.00")


def test_only_one_active_violation_per_assignment(violations, make_assignment):
    assignment = make_assignment()
    violations.start_violation(assignment, start=T)

    with pytest.raises(ValidationError):
        violations.start_violation(assignment, start=T)


def test_start_violation_rejects_bad_rates(violations, make_assignment):
    assignment = make_assignment()
    with pytest.raises(ValidationError):
        violations.start_violation(assignment, start=T, daily_rate="-1")
    with pytest.raises(ValidationError):
        violations.start_violation(assignment, start=T, daily_rate="abc")
    with pytest.raises(ValidationError):
        violations.start_violation(assignment, start=T, daily_rate="NaN")
    with pytest.raises(ValidationError):
        violations.start_violation(assignment, start=T, daily_rate="Infinity")
    assert violations.load_active_violation(assignment.id) is None


def test_finalize_backfills_rate_and_persists_total(violations, repository, make_assignment):
    assignment = make_assignment()
    created = repository.create_violation(assignment.id, T, None)

    total = violations.finalize_violation(created, T + timedelta(hours=73))

    assert total == Decimal("4.00")
    stored = repository.get_violation(created.id)
    assert stored.active is False
    assert stored.state == ViolationState.RESOLVED
    assert stored.daily_rate == Decimal("2.00")
    assert stored.total_due == Decimal("4.00")
    assert stored.resolved_at == T + timedelta(hours=73)
    assert violations.load_active_violation(assignment.id) is None


def test_finalize_twice_is_rejected(violations, make_assignment):
    assignment = make_assignment()
    violation = violations.start_violation(assignment, start=T)
    violations.finalize_violation(violation, T + timedelta(hours=1))

    with pytest.raises(ValidationError, match="already finalized"):
        violations.finalize_violation(violation, T + timedelta(hours=100))
    assert violation.total_due == Decimal("0.00")


def test_update_violation(violations, repository, make_assignment):
    assignment = make_assignment()
    violation = violations.start_violation(assignment, start=T)

    violations.update_violation(violation, daily_rate="5", note="moved boxes")

    stored = repository.get_violation(violation.id)
    assert stored.daily_rate == Decimal("5.00")
    assert stored.note == "moved boxes"

    violations.finalize_violation(violation, T)
    with pytest.raises(ValidationError):
        violations.update_violation(violation, note="too late")


def test_update_violation_can_clear_rate(violations, repository, make_assignment):
    assignment = make_assignment()
    violation = violations.start_violation(assignment, start=T, daily_rate="5")

    violations.update_violation(violation, note="still blocked")
    assert repository.get_violation(violation.id).daily_rate == Decimal("5.00")

    violations.update_violation(violation, daily_rate=None)

    stored = repository.get_violation(violation.id)
    assert stored.daily_rate is None
    assert stored.note == "still blocked"
    assert violations.calculate_accrued_charge(stored, T + timedelta(hours=73)) == Decimal("4.00")


def test_update_violation_rejects_non_finite_rate(violations, repository, make_assignment):
    assignment = make_assignment()
    violation = violations.start_violation(assignment, start=T, daily_rate="5")

    with pytest.raises(ValidationError):
        violations.update_violation(violation, daily_rate="NaN")

    assert repository.get_violation(violation.id).daily_rate == Decimal("5.00")


def test_load_violations_newest_first(violations, make_assignment):
    assignment = make_assignment()
    older = violations.start_violation(assignment, start=T)
    violations.finalize_violation(older, T + timedelta(days=1))
    newer = violations.start_violation(assignment, start=T + timedelta(days=10))

    assert [v.id for v in violations.load_violations(assignment.id)] == [newer.id, older.id]
    assert violations.load_active_violation(assignment.id).id == newer.id
