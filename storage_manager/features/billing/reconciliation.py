"""
Billing reconciliation engine.

Keeps the billing link cached on each storage assignment consistent with the
remote subscription ledger:

- sync_assignment: resolve price and customer, reuse or create the member's
  storage subscription, merge the assignment into an item sharing its price
- release_assignment: remove the assignment from its item, delete the item or
  cancel the subscription when nothing else is billed on it

Assignments sharing a price share one item; membership is encoded in item and
subscription metadata (see metadata.py). Remote state is re-read right before
every mutation and writes are skipped when the remote payload already matches,
so both operations are safe to repeat.

Failures escalate the assignment to manual review and propagate to the caller.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from storage_manager.core.config import StorageConfig
from storage_manager.core.errors import ConfigurationError, ReconciliationError, ValidationError
from storage_manager.core.logging import log_event
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.billing.manual_review import ManualReviewEscalator
from storage_manager.features.billing.metadata import (
    ASSIGNMENT_IDS_KEY,
    LEGACY_MANAGED_KEY,
    MANAGED_KEY,
    MEMBERS_KEY,
    REFERENCE_KEY,
    UNITS_KEY,
    build_assignment_reference,
    build_item_metadata,
    format_assignment_ids,
    has_external_items,
    is_managed_subscription,
    is_tagged_item,
    item_assignment_ids,
    item_lists_assignment,
    item_quantity,
    metadata_matches,
    subscription_assignment_ids,
)
from storage_manager.features.billing.provider import (
    BillingProviderError,
    ItemSpec,
    RemoteItem,
    RemoteSubscription,
    SubscriptionStatus,
    SubscriptionStore,
)
from storage_manager.models.storage import Assignment, Member


logger = logging.getLogger(__name__)

SIBLING_SUBSCRIPTION_LIMIT = 5


@dataclass
class LinkCandidate:
    """Unlinked remote items an assignment could be attached to."""
    assignment: Assignment
    price_id: str
    items: List[RemoteItem] = field(default_factory=list)
    suggested_item: Optional[RemoteItem] = None


class BillingReconciler:
    def __init__(
        self,
        config: StorageConfig,
        store: Optional[SubscriptionStore],
        repository: StorageRepository,
        escalator: ManualReviewEscalator,
    ):
        self.config = config
        self.store = store
        self.repository = repository
        self.escalator = escalator

    def is_enabled(self) -> bool:
        return self.config.billing_enabled and self.store is not None

    # Lookups

    def get_assignment_price_id(self, assignment: Assignment) -> str:
        """Assignment price, else the unit type's price, else the configured default."""
        price_id = (assignment.stripe_price_id or "").strip()
        if price_id:
            return price_id

        unit = self.repository.get_unit(assignment.unit_id)
        storage_type = self.repository.get_type(unit.type_id) if unit else None
        if storage_type is not None:
            type_price = (storage_type.stripe_price_id or "").strip()
            if type_price:
                return type_price

        return (self.config.default_price_id or "").strip()

    def get_stored_customer_id(self, member: Member) -> str:
        return (member.stripe_customer_id or "").strip()

    def load_customer_subscriptions(self, customer_id: str) -> List[RemoteSubscription]:
        if self.store is None or not customer_id:
            return []
        try:
            return self.store.list_subscriptions(customer_id)
        except BillingProviderError as e:
            logger.error(
                "[reconciliation] failed to load customer subscriptions",
                extra={"customer_id": customer_id, "error": str(e)},
            )
            return []

    # Sync

    def sync_assignment(self, assignment: Assignment) -> None:
        """Create or merge the remote billing for an active assignment.

        Raises:
            ConfigurationError: no price or no customer could be resolved
            ReconciliationError: the billing provider rejected a call
        """
        if not self.is_enabled():
            return
        if not assignment.is_active:
            return
        if assignment.complimentary:
            logger.info(
                "[reconciliation] skipping complimentary assignment",
                extra={"assignment_id": assignment.id},
            )
            return

        member = self.repository.get_member(assignment.member_id)
        if member is None:
            logger.warning(
                "[reconciliation] member record missing, cannot sync",
                extra={"assignment_id": assignment.id, "member_id": assignment.member_id},
            )
            return

        needs_save = False
        price_id = self.get_assignment_price_id(assignment)
        if price_id and assignment.set_field("stripe_price_id", price_id):
            needs_save = True

        if not price_id:
            logger.warning(
                "[reconciliation] no Stripe price configured",
                extra={"assignment_id": assignment.id},
            )
            self.escalator.flag(assignment, "Storage assignment is missing a Stripe price ID.")
            raise ConfigurationError("A Stripe price must be configured before Stripe billing can be synchronized (missing Stripe price).")

        try:
            customer_id = self._ensure_customer_id(assignment, member)
            if self._sync(assignment, price_id, customer_id):
                needs_save = True
            if self.escalator.clear(assignment):
                needs_save = True
            if needs_save:
                self.repository.save_assignment(assignment)
        except ConfigurationError:
            # already escalated with a specific reason
            raise
        except BillingProviderError as e:
            self._escalate(assignment, "sync", e)
            raise ReconciliationError(str(e)) from e
        except Exception as e:
            self._escalate(assignment, "sync", e)
            raise

        log_event(
            "info",
            "billing.sync.completed",
            assignment_id=assignment.id,
            subscription_id=assignment.stripe_subscription_id,
            extra={"item_id": assignment.stripe_item_id, "status": assignment.stripe_status},
        )

    def _ensure_customer_id(self, assignment: Assignment, member: Member) -> str:
        customer_id = self.get_stored_customer_id(member)
        if customer_id:
            return customer_id

        cause: Optional[BillingProviderError] = None
        if member.email:
            try:
                customer_id = self.store.find_or_create_customer(
                    member.email, {"storage_member_id": str(member.id)}
                )
            except BillingProviderError as e:
                logger.error(
                    "[reconciliation] failed to create customer",
                    extra={"member_id": member.id, "error": str(e)},
                )
                cause = e
                customer_id = ""

        if customer_id:
            self.repository.save_member_customer_id(member.id, customer_id)
            member.stripe_customer_id = customer_id
            return customer_id

        logger.warning(
            "[reconciliation] no customer for member",
            extra={"assignment_id": assignment.id, "member_id": member.id},
        )
        self.escalator.flag(assignment, "Unable to locate or create a Stripe customer for this member.")
        raise ConfigurationError("Unable to locate a Stripe customer for this member (no customer).") from cause

    def _sync(self, assignment: Assignment, price_id: str, customer_id: str) -> bool:
        changed = False
        subscription_id = (assignment.stripe_subscription_id or "").strip()
        item_id = (assignment.stripe_item_id or "").strip()

        if not subscription_id:
            existing = self._find_member_subscription_id(assignment)
            if existing:
                if assignment.set_field("stripe_subscription_id", existing):
                    changed = True
                subscription_id = existing

        subscription = None
        if subscription_id:
            subscription = self.store.retrieve_subscription(subscription_id)
            if subscription.status.is_terminal:
                subscription = None
                item_id = ""

        if subscription is None:
            ids = [assignment.id]
            subscription = self.store.create_subscription(
                customer_id,
                [ItemSpec(price_id=price_id, quantity=1, metadata=self._item_metadata(ids))],
                self._subscription_metadata(ids),
            )
            item = subscription.items[0] if subscription.items else None
            log_event(
                "info",
                "billing.subscription.created",
                assignment_id=assignment.id,
                subscription_id=subscription.id,
            )
        else:
            subscription_ids = self._subscription_assignment_ids(subscription)
            self._update_subscription_metadata(subscription, subscription_ids + [assignment.id])

            item = self._resolve_item(subscription, item_id, assignment, price_id)
            if item is not None:
                item_ids = self._item_assignment_ids(subscription, item, exclude_id=assignment.id)
                price_param = None if item.price_id == price_id else price_id
                item = self._update_item(item, item_ids + [assignment.id], price_param)
            else:
                item = self.store.create_item(
                    subscription.id, price_id, 1, self._item_metadata([assignment.id])
                )

        if assignment.set_field("stripe_subscription_id", subscription.id):
            changed = True
        if assignment.set_field("stripe_item_id", item.id if item else ""):
            changed = True
        if assignment.set_field("stripe_status", subscription.status.value):
            changed = True
        return changed

    def _find_member_subscription_id(self, assignment: Assignment) -> Optional[str]:
        """Reuse the subscription of a sibling assignment of the same member."""
        candidates = self.repository.find_subscription_candidates(
            assignment.member_id, assignment.id, limit=SIBLING_SUBSCRIPTION_LIMIT
        )
        for candidate in candidates:
            subscription_id = (candidate.stripe_subscription_id or "").strip()
            if not subscription_id:
                continue
            if candidate.stripe_status.strip().lower() == SubscriptionStatus.CANCELED.value:
                continue
            return subscription_id
        return None

    # Release

    def release_assignment(self, assignment: Assignment) -> None:
        """Remove an assignment from its remote item or subscription.

        Raises:
            ReconciliationError: the item is missing or the provider rejected a call
        """
        if not self.is_enabled():
            return
        subscription_id = (assignment.stripe_subscription_id or "").strip()
        if not subscription_id:
            return

        item_id = (assignment.stripe_item_id or "").strip()
        price_id = (assignment.stripe_price_id or "").strip()

        try:
            subscription = self.store.retrieve_subscription(subscription_id)
            managed = is_managed_subscription(subscription)
            remaining_ids = self._subscription_assignment_ids(subscription, exclude_id=assignment.id)
            canceled = subscription.status.is_terminal

            if not canceled:
                item = self._resolve_item(subscription, item_id, assignment, price_id)
                if item is None:
                    if managed and not remaining_ids and not has_external_items(subscription):
                        self.store.cancel_subscription(subscription_id)
                        canceled = True
                    else:
                        logger.warning(
                            "[reconciliation] subscription item not found on release",
                            extra={"assignment_id": assignment.id, "subscription_id": subscription_id},
                        )
                        raise ReconciliationError("Unable to find the Stripe subscription item for this assignment (item not found).")
                else:
                    remaining_item_ids = self._item_assignment_ids(subscription, item, exclude_id=assignment.id)
                    if not remaining_item_ids:
                        if managed and not remaining_ids and not has_external_items(subscription, skip_item_id=item.id):
                            self.store.cancel_subscription(subscription_id)
                            canceled = True
                        else:
                            self.store.delete_item(item.id)
                    else:
                        self._update_item(item, remaining_item_ids)

                if not canceled:
                    self._update_subscription_metadata(subscription, remaining_ids)

            changed = False
            if assignment.set_field("stripe_subscription_id", "" if canceled else subscription_id):
                changed = True
            if assignment.set_field("stripe_item_id", ""):
                changed = True
            status = SubscriptionStatus.CANCELED.value if canceled else subscription.status.value
            if assignment.set_field("stripe_status", status):
                changed = True
            if self.escalator.clear(assignment):
                changed = True
            if changed:
                self.repository.save_assignment(assignment)
        except BillingProviderError as e:
            self._escalate(assignment, "release", e)
            raise ReconciliationError(str(e)) from e
        except Exception as e:
            self._escalate(assignment, "release", e)
            raise

        log_event(
            "info",
            "billing.release.completed",
            assignment_id=assignment.id,
            subscription_id=subscription_id,
            extra={"canceled": canceled},
        )

    # Manual linking

    def link_assignment_to_item(self, assignment: Assignment, subscription_id: str, item_id: str) -> None:
        """Attach an assignment to an existing remote item, keeping the item's price."""
        if not self.is_enabled():
            raise ConfigurationError("Stripe integration is disabled.")
        subscription_id = (subscription_id or "").strip()
        item_id = (item_id or "").strip()
        if not subscription_id or not item_id:
            raise ValidationError("Subscription and item IDs are required.")
        if not assignment.is_active:
            raise ValidationError("Only active assignments can be linked to Stripe billing.")
        if assignment.complimentary:
            raise ValidationError("Complimentary assignments cannot be linked to Stripe billing.")

        try:
            subscription = self.store.retrieve_subscription(subscription_id)
            item = subscription.find_item(item_id)
            if item is None:
                raise ReconciliationError("Unable to locate the specified subscription item on Stripe.")

            # An assignment is billed by at most one item per subscription.
            for other in subscription.items:
                if other.id == item.id or not item_lists_assignment(other, assignment.id):
                    continue
                leftover = [i for i in item_assignment_ids(other) if i != assignment.id]
                if leftover:
                    self._update_item(other, leftover)
                else:
                    self.store.delete_item(other.id)

            subscription_ids = self._subscription_assignment_ids(subscription, exclude_id=assignment.id)
            self._update_subscription_metadata(subscription, subscription_ids + [assignment.id])
            item_ids = self._item_assignment_ids(subscription, item, exclude_id=assignment.id)
            self._update_item(item, item_ids + [assignment.id])
        except BillingProviderError as e:
            raise ReconciliationError(str(e)) from e

        assignment.set_field("stripe_subscription_id", subscription_id)
        assignment.set_field("stripe_item_id", item_id)
        assignment.set_field("stripe_status", subscription.status.value)
        if item.price_id:
            assignment.set_field("stripe_price_id", item.price_id)
        self.escalator.clear(assignment)
        self.repository.save_assignment(assignment)

        log_event(
            "info",
            "billing.link.completed",
            assignment_id=assignment.id,
            subscription_id=subscription_id,
            extra={"item_id": item_id},
        )

    def find_link_candidates(self, member: Member) -> List[LinkCandidate]:
        """Unlinked remote items matching the price of each unlinked active assignment."""
        if not self.is_enabled():
            return []
        customer_id = self.get_stored_customer_id(member)
        if not customer_id:
            return []

        subscriptions = self.load_customer_subscriptions(customer_id)
        candidates = []
        used_items = set()
        for assignment in self.repository.list_active_assignments_for_member(member.id):
            if assignment.complimentary:
                continue
            if assignment.stripe_subscription_id and assignment.stripe_item_id:
                continue
            price_id = self.get_assignment_price_id(assignment)
            if not price_id:
                continue

            items = [
                item
                for subscription in subscriptions
                for item in subscription.items
                if item.id and item.price_id == price_id and not item.metadata.get(ASSIGNMENT_IDS_KEY, "").strip()
            ]
            if not items:
                continue

            suggested = next((item for item in items if item.id not in used_items), None)
            if suggested is not None:
                used_items.add(suggested.id)
            candidates.append(
                LinkCandidate(assignment=assignment, price_id=price_id, items=items, suggested_item=suggested)
            )
        return candidates

    # Webhooks

    def apply_subscription_event(self, subscription_id: str, status: Optional[str]) -> int:
        """Refresh the cached status of every assignment billed on a subscription."""
        if not subscription_id:
            return 0
        parsed = SubscriptionStatus.parse(status)
        updated = 0
        for assignment in self.repository.list_assignments_for_subscription(subscription_id):
            changed = assignment.set_field("stripe_status", parsed.value)
            if parsed.is_terminal:
                if assignment.set_field("stripe_subscription_id", ""):
                    changed = True
                if assignment.set_field("stripe_item_id", ""):
                    changed = True
            if changed:
                self.repository.save_assignment(assignment)
                updated += 1

        log_event(
            "info",
            "billing.webhook.applied",
            subscription_id=subscription_id,
            extra={"status": parsed.value, "updated": updated},
        )
        return updated

    # Remote helpers

    def _resolve_item(
        self,
        subscription: RemoteSubscription,
        item_id: str,
        assignment: Assignment,
        price_id: str,
    ) -> Optional[RemoteItem]:
        if item_id:
            item = subscription.find_item(item_id)
            if item is not None:
                return item
            try:
                item = self.store.retrieve_item(item_id)
            except BillingProviderError as e:
                logger.info(
                    "[reconciliation] stored item not retrievable, searching metadata",
                    extra={"assignment_id": assignment.id, "item_id": item_id, "error": str(e)},
                )
            else:
                if item.subscription_id == subscription.id:
                    return item

        for item in subscription.items:
            if item_lists_assignment(item, assignment.id):
                return item

        if price_id:
            for item in subscription.items:
                if is_tagged_item(item) and item.price_id == price_id:
                    return item
            for item in subscription.items:
                if item.price_id == price_id:
                    return item
        return None

    def _subscription_assignment_ids(
        self, subscription: RemoteSubscription, exclude_id: Optional[int] = None
    ) -> List[int]:
        ids = subscription_assignment_ids(subscription)
        if not ids:
            ids = [
                a.id
                for a in self.repository.list_assignments_for_subscription(subscription.id, active_only=True)
            ]
        return sorted(i for i in set(ids) if i != exclude_id)

    def _item_assignment_ids(
        self, subscription: RemoteSubscription, item: RemoteItem, exclude_id: Optional[int] = None
    ) -> List[int]:
        ids = item_assignment_ids(item)
        if not ids:
            ids = [
                a.id
                for a in self.repository.list_assignments_for_subscription(
                    subscription.id, item_id=item.id, active_only=True
                )
            ]
        return sorted(i for i in set(ids) if i != exclude_id)

    def _update_subscription_metadata(self, subscription: RemoteSubscription, assignment_ids: List[int]) -> None:
        desired = self._subscription_metadata(assignment_ids)
        if metadata_matches(subscription.metadata, desired):
            return
        updated = self.store.update_subscription_metadata(subscription.id, desired)
        subscription.metadata = updated.metadata

    def _update_item(self, item: RemoteItem, assignment_ids: List[int], price_id: Optional[str] = None) -> RemoteItem:
        desired = self._item_metadata(assignment_ids)
        quantity = item_quantity(assignment_ids)
        if price_id is None and item.quantity == quantity and metadata_matches(item.metadata, desired):
            return item
        return self.store.update_item(item.id, metadata=desired, quantity=quantity, price_id=price_id)

    # Metadata payloads

    def _item_metadata(self, assignment_ids: List[int]) -> Dict[str, str]:
        ids = sorted(set(assignment_ids))
        reference = ""
        if ids:
            first = self.repository.get_assignment(ids[0])
            if first is not None:
                snapshot = self.repository.load_snapshot(first)
                reference = build_assignment_reference(snapshot.unit_label, snapshot.type_label)
        return build_item_metadata(ids, reference)

    def _subscription_metadata(self, assignment_ids: List[int]) -> Dict[str, str]:
        """Aggregate metadata; empty descriptive values unset stale keys remotely."""
        ids = sorted(set(assignment_ids))
        units: List[str] = []
        member_names: List[str] = []
        references: List[str] = []
        for assignment in self.repository.get_assignments(ids):
            snapshot = self.repository.load_snapshot(assignment)
            if snapshot.unit_label and snapshot.unit_label not in units:
                units.append(snapshot.unit_label)
            reference = build_assignment_reference(snapshot.unit_label, snapshot.type_label)
            if reference:
                references.append(reference)
            if snapshot.member is not None:
                name = snapshot.member.display_name or snapshot.member.email or ""
                if name and name not in member_names:
                    member_names.append(name)

        return {
            MANAGED_KEY: "1",
            LEGACY_MANAGED_KEY: "1",
            ASSIGNMENT_IDS_KEY: format_assignment_ids(ids),
            UNITS_KEY: ", ".join(units),
            MEMBERS_KEY: ", ".join(member_names),
            REFERENCE_KEY: " | ".join(references),
        }

    def _escalate(self, assignment: Assignment, operation: str, error: Exception) -> None:
        self.escalator.flag(assignment, str(error))
        logger.error(
            f"[reconciliation] {operation} failed",
            extra={
                "assignment_id": assignment.id,
                "subscription_id": assignment.stripe_subscription_id,
                "error": str(error),
            },
        )
