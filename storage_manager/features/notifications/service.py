"""
Storage notifications.

Dispatches lifecycle events (assignment, release, violation_*) to the member
and to configured staff recipients, and manual-review alerts to staff only.
Messages are plain text assembled from the event context; delivery goes
through a Mailer so tests and deployments can swap transports.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from storage_manager.core.config import StorageConfig
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.models.storage import Assignment


logger = logging.getLogger(__name__)

MANUAL_REVIEW_EVENT = "manual_stripe_action"

EVENT_SUBJECTS = {
    "assignment": "Storage assigned: {unit}",
    "release": "Storage released: {unit}",
    "violation_warning": "Storage violation opened: {unit}",
    "violation_fine": "Storage violation fine: {unit}",
    "violation_resolved": "Storage violation resolved: {unit}",
}


@dataclass
class Message:
    event: str
    to: str
    subject: str
    body: str


class Mailer(Protocol):
    def send(self, message: Message) -> bool:
        ...


class LogMailer:
    """Default mailer: records the message in the structured log."""

    def send(self, message: Message) -> bool:
        logger.info(
            "[notifications] message queued",
            extra={"event_type": message.event, "to": message.to, "subject": message.subject},
        )
        return True


def _money(value: Any) -> str:
    if value is None or value == "":
        return "0.00"
    return f"{Decimal(str(value)):,.2f}"


class NotificationService:
    def __init__(self, config: StorageConfig, repository: StorageRepository, mailer: Optional[Mailer] = None):
        self.config = config
        self.repository = repository
        self.mailer = mailer or LogMailer()

    def assignment_url(self, assignment: Assignment) -> str:
        return f"{self.config.base_url}/v1/storage/assignments/{assignment.id}"

    def send_event(self, event: str, context: Dict[str, Any]) -> List[Message]:
        """Send `event` to the member and staff recipients if the event is enabled."""
        if event not in self.config.enabled_events:
            return []

        assignment = context.get("assignment")
        if not isinstance(assignment, Assignment):
            logger.warning("[notifications] missing assignment context", extra={"event_type": event})
            return []

        snapshot = self.repository.load_snapshot(assignment)
        unit_label = snapshot.unit_label or f"unit {assignment.unit_id}"
        subject = EVENT_SUBJECTS.get(event, "Storage update: {unit}").format(unit=unit_label)
        body = self._build_body(event, snapshot, context)

        sent = []
        member = snapshot.member
        if member is not None and member.email:
            sent.append(self._deliver(event, member.email, subject, body))
        else:
            logger.info(
                "[notifications] member has no email, skipping",
                extra={"event_type": event, "assignment_id": assignment.id},
            )

        for address in self.config.notification_recipients:
            sent.append(self._deliver(event, address, subject, body))
        return sent

    def notify_manual_review(self, assignment: Assignment, reason: str) -> List[Message]:
        """Alert staff that an assignment's Stripe billing needs manual follow-up."""
        if not self.config.notification_recipients:
            return []

        snapshot = self.repository.load_snapshot(assignment)
        member = snapshot.member
        reason_text = reason.strip() or "Unknown Stripe error."
        subject = f"Manual Stripe action required for storage assignment {assignment.id}"
        body = "\n".join([
            f"Automatic Stripe synchronization failed for storage assignment {assignment.id}.",
            "",
            f"Unit: {snapshot.unit_label or 'Unknown unit'}",
            f"Member: {member.display_name if member else 'Unknown member'} ({member.email if member and member.email else 'unknown'})",
            f"Reason: {reason_text}",
            "",
            f"Review the assignment: {self.assignment_url(assignment)}",
        ])
        return [
            self._deliver(MANUAL_REVIEW_EVENT, address, subject, body)
            for address in self.config.notification_recipients
        ]

    def _build_body(self, event: str, snapshot, context: Dict[str, Any]) -> str:
        assignment = snapshot.assignment
        member = snapshot.member
        lines = [
            f"Member: {member.display_name if member else ''} ({member.email if member and member.email else ''})",
            f"Unit: {snapshot.unit_label} ({snapshot.type_label})",
            f"Start: {assignment.start_date.isoformat() if assignment.start_date else ''}",
        ]
        release_date = context.get("release_date") or assignment.end_date
        if event == "release" and release_date:
            lines.append(f"Released: {release_date}")
        violation = context.get("violation")
        if violation is not None:
            lines.append(f"Violation start: {violation.start.date().isoformat()}")
            lines.append(f"Daily rate: {_money(violation.daily_rate)}")
        if "violation_total" in context:
            lines.append(f"Total due: {_money(context['violation_total'])}")
        lines.append(f"Stripe status: {assignment.stripe_status}")
        lines.append(f"Manual review required: {'Yes' if assignment.manual_review else 'No'}")
        lines.append("")
        lines.append(f"Assignment details: {self.assignment_url(assignment)}")
        return "\n".join(lines)

    def _deliver(self, event: str, to: str, subject: str, body: str) -> Message:
        message = Message(event=event, to=to, subject=subject, body=body)
        if not self.mailer.send(message):
            logger.warning(
                "[notifications] delivery failed",
                extra={"event_type": event, "to": to},
            )
        return message
