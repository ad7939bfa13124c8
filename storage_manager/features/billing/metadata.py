"""
Storage metadata conventions on remote subscriptions and items.

Subscriptions owned by this system carry `storage_manager_managed=1` and a
sorted, comma-joined `storage_assignment_ids` list covering every item.
Items carry their own `storage_assignment_ids` set; quantity equals the size
of that set (minimum 1). `storage_manager_assignment=1` marks items created
here; anything else on a subscription is externally owned.
"""
import re
from typing import Dict, Iterable, List, Optional

from storage_manager.features.billing.provider import RemoteItem, RemoteSubscription


MANAGED_KEY = "storage_manager_managed"
LEGACY_MANAGED_KEY = "storage_manager"
ITEM_TAG_KEY = "storage_manager_assignment"
ASSIGNMENT_IDS_KEY = "storage_assignment_ids"
ASSIGNMENT_ID_KEY = "storage_assignment_id"
REFERENCE_KEY = "storage_reference"
UNITS_KEY = "storage_units"
MEMBERS_KEY = "storage_members"

_SPLIT = re.compile(r"\s*,\s*")


def parse_assignment_ids(value: Optional[str]) -> List[int]:
    """Convert a comma-joined metadata value into a sorted list of ids."""
    if not isinstance(value, str):
        return []
    value = value.strip()
    if not value:
        return []
    ids = set()
    for part in _SPLIT.split(value):
        if part.isdigit():
            ids.add(int(part))
    return sorted(ids)


def format_assignment_ids(ids: Iterable[int]) -> str:
    return ",".join(str(i) for i in sorted(set(ids)))


def item_assignment_ids(item: RemoteItem) -> List[int]:
    return parse_assignment_ids(item.metadata.get(ASSIGNMENT_IDS_KEY))


def subscription_assignment_ids(subscription: RemoteSubscription) -> List[int]:
    return parse_assignment_ids(subscription.metadata.get(ASSIGNMENT_IDS_KEY))


def item_lists_assignment(item: RemoteItem, assignment_id: int) -> bool:
    if assignment_id in item_assignment_ids(item):
        return True
    return item.metadata.get(ASSIGNMENT_ID_KEY, "") == str(assignment_id)


def is_tagged_item(item: RemoteItem) -> bool:
    return item.metadata.get(ITEM_TAG_KEY, "") == "1"


def is_managed_subscription(subscription: RemoteSubscription) -> bool:
    return subscription.metadata.get(MANAGED_KEY, "") == "1"


def has_external_items(subscription: RemoteSubscription, skip_item_id: Optional[str] = None) -> bool:
    """True when the subscription holds items this system did not create."""
    for item in subscription.items:
        if skip_item_id is not None and item.id == skip_item_id:
            continue
        if not is_tagged_item(item):
            return True
    return False


def build_assignment_reference(unit_label: Optional[str], type_label: Optional[str]) -> str:
    return " - ".join(part for part in (unit_label, type_label) if part)


def build_item_metadata(assignment_ids: Iterable[int], reference: str = "") -> Dict[str, str]:
    ids = sorted(set(assignment_ids))
    return {
        ITEM_TAG_KEY: "1",
        ASSIGNMENT_IDS_KEY: format_assignment_ids(ids),
        ASSIGNMENT_ID_KEY: str(ids[0]) if ids else "",
        REFERENCE_KEY: reference,
    }


def item_quantity(assignment_ids: Iterable[int]) -> int:
    return max(len(set(assignment_ids)), 1)


def metadata_matches(current: Dict[str, str], desired: Dict[str, str]) -> bool:
    """True when applying `desired` would not change `current`.

    Empty desired values mean "unset", so a missing key matches "".
    """
    for key, value in desired.items():
        if current.get(key, "") != value:
            return False
    return True
