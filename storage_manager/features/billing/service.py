"""
Billing wiring.

Builds the Stripe subscription store from settings and assembles the
reconciliation engine with its collaborators. Billing stays disabled unless
STORAGE_BILLING_ENABLED is set and a Stripe key is configured.
"""
import logging
from typing import Optional

from storage_manager.core.config import StorageConfig, settings
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.billing.manual_review import ManualReviewEscalator
from storage_manager.features.billing.provider import BillingProviderError, SubscriptionStore
from storage_manager.features.billing.reconciliation import BillingReconciler
from storage_manager.features.billing.stripe_provider import StripeProvider
from storage_manager.features.notifications.service import NotificationService


logger = logging.getLogger(__name__)


def billing_enabled(config: Optional[StorageConfig] = None) -> bool:
    """Check if billing is enabled (flag set and Stripe configured)."""
    cfg = config or StorageConfig.from_settings()
    return cfg.billing_enabled and bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[SubscriptionStore]:
    """Get the Stripe store if a secret key is configured."""
    if not settings.STRIPE_SECRET_KEY:
        return None
    try:
        return StripeProvider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
    except BillingProviderError as e:
        logger.warning("[billing] Stripe provider unavailable", extra={"error": str(e)})
        return None


def build_reconciler(
    config: Optional[StorageConfig] = None,
    store: Optional[SubscriptionStore] = None,
    repository: Optional[StorageRepository] = None,
    notifications: Optional[NotificationService] = None,
) -> BillingReconciler:
    config = config or StorageConfig.from_settings()
    repository = repository or StorageRepository()
    notifications = notifications or NotificationService(config, repository)
    if store is None and config.billing_enabled:
        store = get_provider()
    return BillingReconciler(
        config,
        store,
        repository,
        ManualReviewEscalator(repository, notifications),
    )
