import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from storage_manager.features.notifications.service import (
    MANUAL_REVIEW_EVENT,
    LogMailer,
    Message,
    NotificationService,
)
from storage_manager.models.storage import Violation
from storage_manager.tests.mocks import RecordingMailer


def test_event_goes_to_member_and_staff(notifications, mailer, make_assignment):
    assignment = make_assignment()

    sent = notifications.send_event("assignment", {"assignment": assignment})

    assert [m.to for m in sent] == ["ada@example.org", "staff@example.org"]
    assert mailer.events() == ["assignment", "assignment"]
    body = sent[0].body
    assert "Member: Ada Lovelace (ada@example.org)" in body
    assert "Unit: L-01 (Locker)" in body
    assert "Start: 2024-01-01" in body
    assert f"https://storage.example.org/v1/storage/assignments/{assignment.id}" in body


def test_disabled_event_is_not_sent(config, repository, make_assignment):
    mailer = RecordingMailer()
    service = NotificationService(replace(config, enabled_events=("release",)), repository, mailer)

    assert service.send_event("assignment", {"assignment": make_assignment()}) == []
    assert mailer.messages == []


def test_event_without_assignment_is_skipped(notifications, mailer):
    assert notifications.send_event("assignment", {}) == []
    assert mailer.messages == []


def test_member_without_email_only_staff(notifications, repository, make_assignment):
    member = repository.create_member("No Mail")
    assignment = make_assignment(member_id=member.id)

    sent = notifications.send_event("release", {"assignment": assignment, "release_date": "2024-02-01"})

    assert [m.to for m in sent] == ["staff@example.org"]
    assert "Released: 2024-02-01" in sent[0].body


def test_violation_details_in_body(notifications, make_assignment):
    assignment = make_assignment()
    violation = Violation(
        id=1,
        assignment_id=assignment.id,
        active=False,
        start=datetime(2024, 1, 2, tzinfo=timezone.utc),
        daily_rate=Decimal("2"),
    )

    sent = notifications.send_event(
        "violation_fine",
        {"assignment": assignment, "violation": violation, "violation_total": Decimal("1234.5")},
    )

    body = sent[0].body
    assert sent[0].subject == "Storage violation fine: L-01"
    assert "Violation start: 2024-01-02" in body
    assert "Daily rate: 2.00" in body
    assert "Total due: 1,234.50" in body


def test_unknown_event_uses_generic_subject(config, repository, make_assignment):
    mailer = RecordingMailer()
    service = NotificationService(replace(config, enabled_events=("audit",)), repository, mailer)

    sent = service.send_event("audit", {"assignment": make_assignment()})

    assert sent[0].subject == "Storage update: L-01"


def test_manual_review_goes_to_staff_only(notifications, mailer, make_assignment):
    assignment = make_assignment()

    sent = notifications.notify_manual_review(assignment, "card declined")

    assert [m.to for m in sent] == ["staff@example.org"]
    assert mailer.events() == [MANUAL_REVIEW_EVENT]
    assert "Reason: card declined" in sent[0].body
    assert "Unit: L-01" in sent[0].body


def test_manual_review_without_recipients(config, repository, make_assignment):
    mailer = RecordingMailer()
    service = NotificationService(replace(config, notification_recipients=()), repository, mailer)

    assert service.notify_manual_review(make_assignment(), "boom") == []
    assert mailer.messages == []


def test_failed_delivery_is_logged(config, repository, make_assignment, caplog):
    service = NotificationService(config, repository, RecordingMailer(succeed=False))

    with caplog.at_level(logging.WARNING):
        sent = service.send_event("assignment", {"assignment": make_assignment()})

    assert len(sent) == 2
    assert "delivery failed" in caplog.text


def test_default_mailer_logs(config, repository, caplog):
    service = NotificationService(config, repository)
    assert isinstance(service.mailer, LogMailer)

    with caplog.at_level(logging.INFO):
        assert service.mailer.send(Message(event="release", to="a@example.org", subject="s", body="b")) is True

    assert "message queued" in caplog.text
