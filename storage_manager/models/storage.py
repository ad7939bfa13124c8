"""
Storage domain records.

Plain dataclasses mapped to rows by the storage repository. Status fields are
explicit enums; the Stripe link fields are strings where "" means unset.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class UnitStatus(str, Enum):
    VACANT = "vacant"
    OCCUPIED = "occupied"


class ViolationState(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


@dataclass
class StorageType:
    id: int
    label: str
    stripe_price_id: str = ""
    monthly_price: Optional[Decimal] = None


@dataclass
class StorageUnit:
    id: int
    label: str
    type_id: Optional[int] = None
    status: UnitStatus = UnitStatus.VACANT


@dataclass
class Member:
    id: int
    display_name: str = ""
    email: Optional[str] = None
    stripe_customer_id: str = ""


@dataclass
class Assignment:
    id: int
    unit_id: int
    member_id: int
    status: AssignmentStatus
    start_date: date
    end_date: Optional[date] = None
    price_snapshot: Optional[Decimal] = None
    complimentary: bool = False
    stripe_price_id: str = ""
    stripe_subscription_id: str = ""
    stripe_item_id: str = ""
    stripe_status: str = ""
    manual_review: bool = False
    manual_review_note: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == AssignmentStatus.ACTIVE

    def set_field(self, name: str, value: Any) -> bool:
        """Assign `value` only when it differs; return True when changed.

        String link fields treat None and "" as the same empty value.
        """
        current = getattr(self, name)
        if isinstance(current, str):
            value = "" if value is None else str(value)
        if current == value:
            return False
        setattr(self, name, value)
        return True


@dataclass
class Violation:
    id: int
    assignment_id: int
    active: bool
    start: datetime
    daily_rate: Optional[Decimal] = None
    resolved_at: Optional[datetime] = None
    total_due: Optional[Decimal] = None
    note: str = ""

    @property
    def state(self) -> ViolationState:
        return ViolationState.ACTIVE if self.active else ViolationState.RESOLVED


@dataclass
class StorageSnapshot:
    """Assignment plus the unit, type and member it references."""
    assignment: Assignment
    unit: Optional[StorageUnit] = None
    storage_type: Optional[StorageType] = None
    member: Optional[Member] = None

    @property
    def unit_label(self) -> str:
        return self.unit.label if self.unit else ""

    @property
    def type_label(self) -> str:
        return self.storage_type.label if self.storage_type else ""
