"""
FastAPI dependency providers.

Each request gets services built from the current settings. Tests replace
get_config / get_store / get_mailer through app.dependency_overrides.
"""
from typing import Optional

from fastapi import Depends

from storage_manager.core.config import StorageConfig
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.assignments.service import AssignmentService
from storage_manager.features.billing.manual_review import ManualReviewEscalator
from storage_manager.features.billing.provider import SubscriptionStore
from storage_manager.features.billing.reconciliation import BillingReconciler
from storage_manager.features.billing.service import billing_enabled, build_reconciler, get_provider
from storage_manager.features.notifications.service import LogMailer, Mailer, NotificationService
from storage_manager.features.violations.service import ViolationService


def get_config() -> StorageConfig:
    return StorageConfig.from_settings()


def get_repository() -> StorageRepository:
    return StorageRepository()


def get_store(config: StorageConfig = Depends(get_config)) -> Optional[SubscriptionStore]:
    if not billing_enabled(config):
        return None
    return get_provider()


def get_mailer() -> Mailer:
    return LogMailer()


def get_notifications(
    config: StorageConfig = Depends(get_config),
    repository: StorageRepository = Depends(get_repository),
    mailer: Mailer = Depends(get_mailer),
) -> NotificationService:
    return NotificationService(config, repository, mailer)


def get_escalator(
    repository: StorageRepository = Depends(get_repository),
    notifications: NotificationService = Depends(get_notifications),
) -> ManualReviewEscalator:
    return ManualReviewEscalator(repository, notifications)


def get_reconciler(
    config: StorageConfig = Depends(get_config),
    store: Optional[SubscriptionStore] = Depends(get_store),
    repository: StorageRepository = Depends(get_repository),
    notifications: NotificationService = Depends(get_notifications),
) -> BillingReconciler:
    return build_reconciler(config, store, repository, notifications)


def get_violation_service(
    config: StorageConfig = Depends(get_config),
    repository: StorageRepository = Depends(get_repository),
) -> ViolationService:
    return ViolationService(config, repository)


def get_assignment_service(
    repository: StorageRepository = Depends(get_repository),
    reconciler: BillingReconciler = Depends(get_reconciler),
    violations: ViolationService = Depends(get_violation_service),
    notifications: NotificationService = Depends(get_notifications),
) -> AssignmentService:
    return AssignmentService(repository, reconciler, violations, notifications)
