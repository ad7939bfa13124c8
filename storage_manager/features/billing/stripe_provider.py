"""
Stripe subscription store.

Implements the SubscriptionStore protocol using the Stripe API. All SDK
objects are normalized into RemoteSubscription / RemoteItem records and all
Stripe errors are wrapped in BillingProviderError.
"""
import os
from typing import Dict, Any, List, Optional

import stripe

from storage_manager.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ItemSpec,
    RemoteItem,
    RemoteSubscription,
    SubscriptionStatus,
    SubscriptionWebhookResult,
)


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe object (or plain dict) into a plain dict."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _string_metadata(value: Any) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in _to_dict(value).items()}


def _normalize_item(data: Any, subscription_id: Optional[str] = None) -> RemoteItem:
    item = _to_dict(data)
    price = item.get("price") or {}
    if isinstance(price, str):
        price_id, nickname, product_name = price, None, None
    else:
        price = _to_dict(price)
        price_id = price.get("id") or ""
        nickname = price.get("nickname")
        product = price.get("product")
        product_name = _to_dict(product).get("name") if product and not isinstance(product, str) else None
    return RemoteItem(
        id=item.get("id") or "",
        price_id=price_id,
        quantity=int(item.get("quantity") or 1),
        metadata=_string_metadata(item.get("metadata")),
        subscription_id=item.get("subscription") or subscription_id,
        price_nickname=nickname,
        product_name=product_name,
    )


def _normalize_subscription(data: Any) -> RemoteSubscription:
    sub = _to_dict(data)
    sub_id = sub.get("id") or ""
    customer = sub.get("customer")
    if customer is not None and not isinstance(customer, str):
        customer = _to_dict(customer).get("id")
    items_data = _to_dict(sub.get("items")).get("data") or []
    return RemoteSubscription(
        id=sub_id,
        customer_id=customer or "",
        status=SubscriptionStatus.parse(sub.get("status")),
        metadata=_string_metadata(sub.get("metadata")),
        items=[_normalize_item(item, sub_id) for item in items_data],
    )


class StripeProvider:
    """Stripe implementation of the SubscriptionStore protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def find_or_create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Find a Stripe customer by email or create one."""
        try:
            customers = stripe.Customer.list(email=email, limit=1)
            if customers.data:
                return customers.data[0].id

            customer = stripe.Customer.create(email=email, metadata=metadata or {})
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}") from e

    def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, expand=["items.data"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}") from e
        return _normalize_subscription(subscription)

    def list_subscriptions(self, customer_id: str) -> List[RemoteSubscription]:
        try:
            result = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=100,
                expand=["data.items.data"],
            )
            return [_normalize_subscription(sub) for sub in result.auto_paging_iter()]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}") from e

    def create_subscription(
        self,
        customer_id: str,
        items: List[ItemSpec],
        metadata: Dict[str, str],
    ) -> RemoteSubscription:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[
                    {"price": spec.price_id, "quantity": spec.quantity, "metadata": spec.metadata}
                    for spec in items
                ],
                metadata=metadata,
                expand=["items.data"],
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription creation failed: {e}") from e
        return _normalize_subscription(subscription)

    def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> RemoteSubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                metadata=metadata,
                expand=["items.data"],
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}") from e
        return _normalize_subscription(subscription)

    def cancel_subscription(self, subscription_id: str) -> RemoteSubscription:
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}") from e
        return _normalize_subscription(subscription)

    def retrieve_item(self, item_id: str) -> RemoteItem:
        try:
            item = stripe.SubscriptionItem.retrieve(item_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription item retrieval failed: {e}") from e
        return _normalize_item(item)

    def create_item(
        self,
        subscription_id: str,
        price_id: str,
        quantity: int,
        metadata: Dict[str, str],
    ) -> RemoteItem:
        try:
            item = stripe.SubscriptionItem.create(
                subscription=subscription_id,
                price=price_id,
                quantity=quantity,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription item creation failed: {e}") from e
        return _normalize_item(item, subscription_id)

    def update_item(
        self,
        item_id: str,
        *,
        metadata: Dict[str, str],
        quantity: int,
        price_id: Optional[str] = None,
    ) -> RemoteItem:
        params: Dict[str, Any] = {"metadata": metadata, "quantity": quantity}
        if price_id:
            params["price"] = price_id
        try:
            item = stripe.SubscriptionItem.modify(item_id, **params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription item update failed: {e}") from e
        return _normalize_item(item)

    def delete_item(self, item_id: str) -> None:
        try:
            stripe.SubscriptionItem.delete(item_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription item deletion failed: {e}") from e

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> SubscriptionWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        return self._parse_event(_to_dict(event))

    def _parse_event(self, event: Dict[str, Any]) -> SubscriptionWebhookResult:
        """Parse Stripe event into a normalized SubscriptionWebhookResult."""
        event_type = event.get("type") or ""
        data = _to_dict(_to_dict(event.get("data")).get("object"))

        subscription_id = None
        status = None
        if event_type.startswith("customer.subscription."):
            subscription_id = data.get("id")
            status = data.get("status")
        elif event_type.startswith("invoice."):
            subscription_id = data.get("subscription")

        return SubscriptionWebhookResult(
            event_id=event.get("id") or "",
            event_type=event_type,
            subscription_id=subscription_id,
            status=status,
            metadata=_to_dict(data.get("metadata")),
        )
