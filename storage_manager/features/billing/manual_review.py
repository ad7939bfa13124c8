"""
Manual review escalation for Stripe billing.

A flagged assignment is the durable record of a sync failure that needs a
human. Staff are notified only when the flag transitions from clear to set;
the flag is cleared by a successful sync or an explicit confirmation.
"""
import logging
from typing import Optional

from storage_manager.core.errors import NotFoundError
from storage_manager.core.logging import log_event
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.notifications.service import NotificationService
from storage_manager.models.storage import Assignment


logger = logging.getLogger(__name__)

NOTE_LIMIT = 1000
DEFAULT_REASON = "Stripe sync failed; manual follow-up required."
ELLIPSIS = "…"


def truncate_note(text: str, limit: int = NOTE_LIMIT) -> str:
    """Truncate on a word boundary with a trailing ellipsis, staying within `limit`."""
    if len(text) <= limit:
        return text
    cut = text[: limit - len(ELLIPSIS)]
    boundary = cut.rfind(" ")
    if boundary > 0:
        cut = cut[:boundary]
    return cut.rstrip() + ELLIPSIS


class ManualReviewEscalator:
    def __init__(self, repository: StorageRepository, notifications: Optional[NotificationService] = None):
        self.repository = repository
        self.notifications = notifications

    def flag(self, assignment: Assignment, reason: str) -> None:
        """Mark the assignment for manual review and notify staff on first flag."""
        was_flagged = assignment.manual_review
        changed = assignment.set_field("manual_review", True)

        note = reason.strip() or DEFAULT_REASON
        if assignment.set_field("manual_review_note", truncate_note(note)):
            changed = True

        if changed:
            try:
                self.repository.save_assignment(assignment)
            except Exception as e:
                logger.error(
                    "[manual_review] failed to persist flag",
                    extra={"assignment_id": assignment.id, "error": str(e)},
                )

        log_event(
            "warning",
            "manual_review.flagged",
            assignment_id=assignment.id,
            subscription_id=assignment.stripe_subscription_id or None,
            extra={"reason": note, "first_flag": not was_flagged},
        )

        if not was_flagged and self.notifications is not None:
            try:
                self.notifications.notify_manual_review(assignment, reason)
            except Exception as e:
                logger.error(
                    "[manual_review] failed to send notification",
                    extra={"assignment_id": assignment.id, "error": str(e)},
                )

    def clear(self, assignment: Assignment, note: Optional[str] = "") -> bool:
        """Unset the flag; a non-None `note` replaces the stored note.

        Returns True when anything changed so callers decide whether to persist.
        """
        changed = assignment.set_field("manual_review", False)
        if note is not None:
            value = truncate_note(note) if note else ""
            if assignment.set_field("manual_review_note", value):
                changed = True
        return changed

    def confirm(self, assignment_id: int, note: str = "") -> bool:
        """Explicit staff confirmation that billing was fixed by hand."""
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError(f"Storage assignment {assignment_id} not found")

        changed = self.clear(assignment, note.strip())
        if changed:
            self.repository.save_assignment(assignment)
            log_event("info", "manual_review.confirmed", assignment_id=assignment.id)
        return changed
