"""
Storage repository.

Loads and saves storage records through SQLAlchemy Core tables and maps rows
to the dataclasses in storage_manager.models.storage.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select, insert, update, and_

from storage_manager.core.database import (
    get_db_session,
    storage_types,
    storage_units,
    members,
    storage_assignments,
    storage_violations,
)
from storage_manager.models.storage import (
    Assignment,
    AssignmentStatus,
    Member,
    StorageSnapshot,
    StorageType,
    StorageUnit,
    UnitStatus,
    Violation,
    ensure_utc,
)


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _row_to_assignment(row) -> Assignment:
    return Assignment(
        id=row.id,
        unit_id=row.unit_id,
        member_id=row.member_id,
        status=AssignmentStatus(row.status),
        start_date=row.start_date,
        end_date=row.end_date,
        price_snapshot=_decimal(row.price_snapshot),
        complimentary=bool(row.complimentary),
        stripe_price_id=row.stripe_price_id or "",
        stripe_subscription_id=row.stripe_subscription_id or "",
        stripe_item_id=row.stripe_item_id or "",
        stripe_status=row.stripe_status or "",
        manual_review=bool(row.manual_review),
        manual_review_note=row.manual_review_note or "",
    )


def _row_to_violation(row) -> Violation:
    return Violation(
        id=row.id,
        assignment_id=row.assignment_id,
        active=bool(row.active),
        start=ensure_utc(row.start),
        daily_rate=_decimal(row.daily_rate),
        resolved_at=ensure_utc(row.resolved_at),
        total_due=_decimal(row.total_due),
        note=row.note or "",
    )


class StorageRepository:
    """Entity load/save for storage types, units, members, assignments and violations."""

    # Types / units / members

    def create_type(self, label: str, stripe_price_id: str = "", monthly_price: Optional[Decimal] = None) -> StorageType:
        with get_db_session() as session:
            result = session.execute(
                insert(storage_types).values(
                    label=label,
                    stripe_price_id=stripe_price_id,
                    monthly_price=monthly_price,
                )
            )
            session.commit()
            type_id = result.inserted_primary_key[0]
        return StorageType(id=type_id, label=label, stripe_price_id=stripe_price_id, monthly_price=monthly_price)

    def get_type(self, type_id: Optional[int]) -> Optional[StorageType]:
        if type_id is None:
            return None
        with get_db_session() as session:
            row = session.execute(
                select(storage_types).where(storage_types.c.id == type_id)
            ).fetchone()
        if not row:
            return None
        return StorageType(
            id=row.id,
            label=row.label,
            stripe_price_id=row.stripe_price_id or "",
            monthly_price=_decimal(row.monthly_price),
        )

    def create_unit(self, label: str, type_id: Optional[int] = None) -> StorageUnit:
        with get_db_session() as session:
            result = session.execute(
                insert(storage_units).values(label=label, type_id=type_id, status=UnitStatus.VACANT.value)
            )
            session.commit()
            unit_id = result.inserted_primary_key[0]
        return StorageUnit(id=unit_id, label=label, type_id=type_id)

    def get_unit(self, unit_id: int) -> Optional[StorageUnit]:
        with get_db_session() as session:
            row = session.execute(
                select(storage_units).where(storage_units.c.id == unit_id)
            ).fetchone()
        if not row:
            return None
        return StorageUnit(id=row.id, label=row.label, type_id=row.type_id, status=UnitStatus(row.status))

    def set_unit_status(self, unit_id: int, status: UnitStatus) -> None:
        with get_db_session() as session:
            session.execute(
                update(storage_units)
                .where(storage_units.c.id == unit_id)
                .values(status=status.value)
            )
            session.commit()

    def create_member(self, display_name: str, email: Optional[str] = None, stripe_customer_id: str = "") -> Member:
        with get_db_session() as session:
            result = session.execute(
                insert(members).values(
                    display_name=display_name,
                    email=email,
                    stripe_customer_id=stripe_customer_id,
                )
            )
            session.commit()
            member_id = result.inserted_primary_key[0]
        return Member(id=member_id, display_name=display_name, email=email, stripe_customer_id=stripe_customer_id)

    def get_member(self, member_id: int) -> Optional[Member]:
        with get_db_session() as session:
            row = session.execute(
                select(members).where(members.c.id == member_id)
            ).fetchone()
        if not row:
            return None
        return Member(
            id=row.id,
            display_name=row.display_name or "",
            email=row.email,
            stripe_customer_id=row.stripe_customer_id or "",
        )

    def save_member_customer_id(self, member_id: int, customer_id: str) -> None:
        with get_db_session() as session:
            session.execute(
                update(members)
                .where(members.c.id == member_id)
                .values(stripe_customer_id=customer_id)
            )
            session.commit()

    # Assignments

    def create_assignment(
        self,
        unit_id: int,
        member_id: int,
        start_date: date,
        *,
        price_snapshot: Optional[Decimal] = None,
        complimentary: bool = False,
        stripe_price_id: str = "",
        status: AssignmentStatus = AssignmentStatus.ACTIVE,
    ) -> Assignment:
        with get_db_session() as session:
            result = session.execute(
                insert(storage_assignments).values(
                    unit_id=unit_id,
                    member_id=member_id,
                    status=status.value,
                    start_date=start_date,
                    price_snapshot=price_snapshot,
                    complimentary=complimentary,
                    stripe_price_id=stripe_price_id,
                )
            )
            session.commit()
            assignment_id = result.inserted_primary_key[0]
        return self.get_assignment(assignment_id)

    def get_assignment(self, assignment_id: int) -> Optional[Assignment]:
        with get_db_session() as session:
            row = session.execute(
                select(storage_assignments).where(storage_assignments.c.id == assignment_id)
            ).fetchone()
        return _row_to_assignment(row) if row else None

    def get_assignments(self, assignment_ids: Iterable[int]) -> List[Assignment]:
        ids = list(assignment_ids)
        if not ids:
            return []
        with get_db_session() as session:
            rows = session.execute(
                select(storage_assignments)
                .where(storage_assignments.c.id.in_(ids))
                .order_by(storage_assignments.c.id.asc())
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def save_assignment(self, assignment: Assignment) -> None:
        with get_db_session() as session:
            session.execute(
                update(storage_assignments)
                .where(storage_assignments.c.id == assignment.id)
                .values(
                    status=assignment.status.value,
                    end_date=assignment.end_date,
                    price_snapshot=assignment.price_snapshot,
                    complimentary=assignment.complimentary,
                    stripe_price_id=assignment.stripe_price_id,
                    stripe_subscription_id=assignment.stripe_subscription_id,
                    stripe_item_id=assignment.stripe_item_id,
                    stripe_status=assignment.stripe_status,
                    manual_review=assignment.manual_review,
                    manual_review_note=assignment.manual_review_note,
                )
            )
            session.commit()

    def find_active_assignment_for_unit(self, unit_id: int) -> Optional[Assignment]:
        with get_db_session() as session:
            row = session.execute(
                select(storage_assignments)
                .where(storage_assignments.c.unit_id == unit_id)
                .where(storage_assignments.c.status == AssignmentStatus.ACTIVE.value)
                .order_by(storage_assignments.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_assignment(row) if row else None

    def list_active_assignments_for_member(self, member_id: int) -> List[Assignment]:
        with get_db_session() as session:
            rows = session.execute(
                select(storage_assignments)
                .where(storage_assignments.c.member_id == member_id)
                .where(storage_assignments.c.status == AssignmentStatus.ACTIVE.value)
                .order_by(storage_assignments.c.id.asc())
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def find_subscription_candidates(self, member_id: int, exclude_assignment_id: int, limit: int = 5) -> List[Assignment]:
        """Other assignments of the member caching a subscription id, newest first."""
        with get_db_session() as session:
            rows = session.execute(
                select(storage_assignments)
                .where(storage_assignments.c.member_id == member_id)
                .where(storage_assignments.c.id != exclude_assignment_id)
                .where(storage_assignments.c.stripe_subscription_id != "")
                .order_by(storage_assignments.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def list_assignments_for_subscription(
        self,
        subscription_id: str,
        *,
        item_id: Optional[str] = None,
        exclude_assignment_id: Optional[int] = None,
        active_only: bool = False,
    ) -> List[Assignment]:
        conditions = [storage_assignments.c.stripe_subscription_id == subscription_id]
        if item_id is not None:
            conditions.append(storage_assignments.c.stripe_item_id == item_id)
        if exclude_assignment_id is not None:
            conditions.append(storage_assignments.c.id != exclude_assignment_id)
        if active_only:
            conditions.append(storage_assignments.c.status == AssignmentStatus.ACTIVE.value)
        with get_db_session() as session:
            rows = session.execute(
                select(storage_assignments)
                .where(and_(*conditions))
                .order_by(storage_assignments.c.id.asc())
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def load_snapshot(self, assignment: Assignment) -> StorageSnapshot:
        unit = self.get_unit(assignment.unit_id)
        storage_type = self.get_type(unit.type_id) if unit else None
        return StorageSnapshot(
            assignment=assignment,
            unit=unit,
            storage_type=storage_type,
            member=self.get_member(assignment.member_id),
        )

    # Violations

    def create_violation(
        self,
        assignment_id: int,
        start: datetime,
        daily_rate: Optional[Decimal],
        note: str = "",
    ) -> Violation:
        with get_db_session() as session:
            result = session.execute(
                insert(storage_violations).values(
                    assignment_id=assignment_id,
                    active=True,
                    start=start,
                    daily_rate=daily_rate,
                    note=note or "",
                )
            )
            session.commit()
            violation_id = result.inserted_primary_key[0]
        return self.get_violation(violation_id)

    def get_violation(self, violation_id: int) -> Optional[Violation]:
        with get_db_session() as session:
            row = session.execute(
                select(storage_violations).where(storage_violations.c.id == violation_id)
            ).fetchone()
        return _row_to_violation(row) if row else None

    def save_violation(self, violation: Violation) -> None:
        with get_db_session() as session:
            session.execute(
                update(storage_violations)
                .where(storage_violations.c.id == violation.id)
                .values(
                    active=violation.active,
                    start=violation.start,
                    daily_rate=violation.daily_rate,
                    resolved_at=violation.resolved_at,
                    total_due=violation.total_due,
                    note=violation.note,
                )
            )
            session.commit()

    def find_active_violation(self, assignment_id: int) -> Optional[Violation]:
        with get_db_session() as session:
            row = session.execute(
                select(storage_violations)
                .where(storage_violations.c.assignment_id == assignment_id)
                .where(storage_violations.c.active.is_(True))
                .order_by(storage_violations.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_violation(row) if row else None

    def list_violations(self, assignment_id: int) -> List[Violation]:
        with get_db_session() as session:
            rows = session.execute(
                select(storage_violations)
                .where(storage_violations.c.assignment_id == assignment_id)
                .order_by(storage_violations.c.start.desc(), storage_violations.c.id.desc())
            ).fetchall()
        return [_row_to_violation(r) for r in rows]
