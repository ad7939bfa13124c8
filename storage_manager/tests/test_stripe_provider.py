"""
Stripe store: SDK payload normalization, error wrapping and webhook parsing.

Stripe calls are patched; no network access.
"""
from unittest.mock import Mock, patch

import pytest
import stripe

from storage_manager.core.config import StorageConfig, settings
from storage_manager.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ItemSpec,
    SubscriptionStatus,
)
from storage_manager.features.billing.service import billing_enabled, build_reconciler, get_provider
from storage_manager.features.billing.stripe_provider import StripeProvider


SUBSCRIPTION_PAYLOAD = {
    "id": "sub_123",
    "customer": {"id": "cus_123"},
    "status": "past_due",
    "metadata": {"storage_manager_managed": "1", "storage_assignment_ids": "4,2"},
    "items": {
        "data": [
            {
                "id": "si_1",
                "quantity": 2,
                "metadata": {"storage_assignment_ids": "2,4", "note": None},
                "price": {"id": "price_locker", "nickname": "Locker", "product": {"name": "Locker rental"}},
            },
            {"id": "si_2", "price": "price_gym"},
        ]
    },
}


@pytest.fixture
def provider():
    return StripeProvider("sk_test_123", "whsec_test")


def test_requires_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_retrieve_subscription_normalizes_payload(provider):
    with patch("stripe.Subscription.retrieve", return_value=SUBSCRIPTION_PAYLOAD) as retrieve:
        subscription = provider.retrieve_subscription("sub_123")

    retrieve.assert_called_once_with("sub_123", expand=["items.data"])
    assert subscription.customer_id == "cus_123"
    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert subscription.metadata["storage_assignment_ids"] == "4,2"

    first, second = subscription.items
    assert first.price_id == "price_locker"
    assert first.quantity == 2
    assert first.subscription_id == "sub_123"
    assert first.metadata == {"storage_assignment_ids": "2,4", "note": ""}
    assert first.price_nickname == "Locker"
    assert first.product_name == "Locker rental"
    assert second.price_id == "price_gym"
    assert second.quantity == 1
    assert second.product_name is None


def test_unknown_status_is_normalized(provider):
    with patch("stripe.Subscription.retrieve", return_value={"id": "sub_1", "status": "mystery"}):
        subscription = provider.retrieve_subscription("sub_1")
    assert subscription.status == SubscriptionStatus.UNKNOWN
    assert subscription.items == []


def test_stripe_errors_are_wrapped(provider):
    with patch("stripe.Subscription.retrieve", side_effect=stripe.StripeError("No such subscription")):
        with pytest.raises(BillingProviderError) as exc:
            provider.retrieve_subscription("sub_missing")

    assert "No such subscription" in str(exc.value)
    assert isinstance(exc.value.__cause__, stripe.StripeError)


def test_find_or_create_customer_reuses_existing(provider):
    existing = Mock(data=[Mock(id="cus_existing")])
    with patch("stripe.Customer.list", return_value=existing), patch("stripe.Customer.create") as create:
        assert provider.find_or_create_customer("ada@example.org") == "cus_existing"
    create.assert_not_called()


def test_find_or_create_customer_creates(provider):
    with patch("stripe.Customer.list", return_value=Mock(data=[])), patch(
        "stripe.Customer.create", return_value=Mock(id="cus_new")
    ) as create:
        assert provider.find_or_create_customer("ada@example.org", {"storage_member_id": "1"}) == "cus_new"
    create.assert_called_once_with(email="ada@example.org", metadata={"storage_member_id": "1"})


def test_create_subscription_sends_item_specs(provider):
    with patch("stripe.Subscription.create", return_value=SUBSCRIPTION_PAYLOAD) as create:
        provider.create_subscription(
            "cus_123",
            [ItemSpec(price_id="price_locker", metadata={"storage_assignment_ids": "2"})],
            {"storage_manager_managed": "1"},
        )

    kwargs = create.call_args.kwargs
    assert kwargs["customer"] == "cus_123"
    assert kwargs["items"] == [
        {"price": "price_locker", "quantity": 1, "metadata": {"storage_assignment_ids": "2"}}
    ]
    assert kwargs["metadata"] == {"storage_manager_managed": "1"}


def test_update_item_only_sends_price_when_changing(provider):
    item = {"id": "si_1", "price": {"id": "price_locker"}, "quantity": 1, "subscription": "sub_1"}
    with patch("stripe.SubscriptionItem.modify", return_value=item) as modify:
        provider.update_item("si_1", metadata={"a": "1"}, quantity=1)
        provider.update_item("si_1", metadata={"a": "1"}, quantity=1, price_id="price_large")

    assert modify.call_args_list[0].kwargs == {"metadata": {"a": "1"}, "quantity": 1}
    assert modify.call_args_list[1].kwargs["price"] == "price_large"


def test_delete_item_wraps_errors(provider):
    with patch("stripe.SubscriptionItem.delete", side_effect=stripe.StripeError("gone")):
        with pytest.raises(BillingProviderError):
            provider.delete_item("si_1")


def test_webhook_requires_signature(provider):
    with pytest.raises(BillingWebhookError, match="stripe-signature"):
        provider.handle_webhook({}, b"{}")


def test_webhook_requires_secret():
    provider = StripeProvider("sk_test_123", None)
    provider.webhook_secret = None
    with pytest.raises(BillingWebhookError, match="not configured"):
        provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")


def test_webhook_rejects_bad_signature(provider):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError, match="Invalid signature"):
            provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")


def test_webhook_parses_subscription_event(provider):
    event = {
        "id": "evt_1",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_123", "status": "canceled", "metadata": {"storage_manager_managed": "1"}}},
    }
    with patch("stripe.Webhook.construct_event", return_value=event):
        result = provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")

    assert result.event_id == "evt_1"
    assert result.subscription_id == "sub_123"
    assert result.status == "canceled"
    assert result.metadata == {"storage_manager_managed": "1"}


def test_invoice_event_carries_subscription_without_status(provider):
    result = provider._parse_event(
        {"id": "evt_2", "type": "invoice.paid", "data": {"object": {"subscription": "sub_9"}}}
    )
    assert result.subscription_id == "sub_9"
    assert result.status is None


def test_billing_disabled_without_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    assert billing_enabled(StorageConfig(billing_enabled=True)) is False
    assert get_provider() is None


def test_billing_enabled_with_flag_and_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    assert billing_enabled(StorageConfig(billing_enabled=True)) is True
    assert billing_enabled(StorageConfig(billing_enabled=False)) is False
    assert isinstance(get_provider(), StripeProvider)


def test_build_reconciler_without_billing():
    reconciler = build_reconciler(StorageConfig(billing_enabled=False))
    assert reconciler.store is None
    assert reconciler.is_enabled() is False
