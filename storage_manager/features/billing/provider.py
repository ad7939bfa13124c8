"""
Subscription store protocol.

Defines the interface the reconciler uses to read and mutate remote
subscriptions (Stripe, or an in-memory fake in tests), plus the normalized
records every provider returns so business logic never touches SDK objects.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Remote subscription status as reported by the billing provider."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionStatus":
        normalized = (value or "").strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        """Canceled and expired subscriptions cannot carry storage billing."""
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED)


@dataclass
class RemoteItem:
    """One priced line inside a remote subscription."""
    id: str
    price_id: str
    quantity: int = 1
    metadata: Dict[str, str] = field(default_factory=dict)
    subscription_id: Optional[str] = None
    price_nickname: Optional[str] = None
    product_name: Optional[str] = None


@dataclass
class RemoteSubscription:
    id: str
    customer_id: str
    status: SubscriptionStatus
    metadata: Dict[str, str] = field(default_factory=dict)
    items: List[RemoteItem] = field(default_factory=list)

    def find_item(self, item_id: str) -> Optional[RemoteItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


@dataclass
class ItemSpec:
    """Line item requested when creating a subscription."""
    price_id: str
    quantity: int = 1
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class SubscriptionWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    subscription_id: Optional[str]
    status: Optional[str]
    metadata: Dict[str, Any]


class SubscriptionStore(Protocol):
    """
    Protocol for remote subscription stores.

    Implementations must handle:
    - Customer lookup/creation by email
    - Subscription retrieval, creation, metadata updates and cancellation
    - Subscription item retrieval, creation, update and deletion
    - Webhook signature verification and parsing

    Every method raises BillingProviderError when the remote call fails.
    """

    def find_or_create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Return the provider customer id for `email`, creating the customer if needed."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        ...

    def list_subscriptions(self, customer_id: str) -> List[RemoteSubscription]:
        """All subscriptions of a customer, any status."""
        ...

    def create_subscription(
        self,
        customer_id: str,
        items: List[ItemSpec],
        metadata: Dict[str, str],
    ) -> RemoteSubscription:
        ...

    def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> RemoteSubscription:
        """Merge `metadata` into the subscription; empty values unset keys."""
        ...

    def cancel_subscription(self, subscription_id: str) -> RemoteSubscription:
        ...

    def retrieve_item(self, item_id: str) -> RemoteItem:
        ...

    def create_item(
        self,
        subscription_id: str,
        price_id: str,
        quantity: int,
        metadata: Dict[str, str],
    ) -> RemoteItem:
        ...

    def update_item(
        self,
        item_id: str,
        *,
        metadata: Dict[str, str],
        quantity: int,
        price_id: Optional[str] = None,
    ) -> RemoteItem:
        ...

    def delete_item(self, item_id: str) -> None:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> SubscriptionWebhookResult:
        """Verify webhook signature and parse the event."""
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
