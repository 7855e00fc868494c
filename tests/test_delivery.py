"""
Tests for the delivery pass and the notification sinks.
"""
import httpx
import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from conftest import NOW, TODAY
from relance.models import FollowUp, FollowUpEvent, FollowUpStatus
from relance.errors import NotificationError
from relance.engine import delivery
from relance.engine.delivery import delivery_pass, due_followups
from relance.integrations.notification_sink import (
    OutboundMessage, ResendSink, SimulatedSink,
)


def scheduled_followup(db, entity, follow_up_type, priority="medium", entity_type="invoice",
                       stage=1, attempts=0, max_attempts=3, scheduled_at=None,
                       subject="Relance", text="Bonjour", html="<p>Bonjour</p>"):
    fu = FollowUp(
        entity_type=entity_type, entity_id=entity.id, client_id=entity.client_id,
        follow_up_type=follow_up_type, stage=stage, status="scheduled",
        scheduled_at=scheduled_at or NOW - timedelta(hours=1),
        attempts=attempts, max_attempts=max_attempts,
        subject=subject, text_content=text, html_content=html,
        meta={"priority": priority},
    )
    db.add(fu)
    db.commit()
    return fu


# =============================================================================
# ATTEMPT ACCOUNTING
# =============================================================================

class TestAttempts:

    def test_attempt_below_max_reschedules_next_day(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY + timedelta(days=3))
        fu = scheduled_followup(db, invoice, "approaching_deadline", max_attempts=3)

        results = delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert results["medium_priority"] == 1
        assert fu.status == FollowUpStatus.SCHEDULED.value
        assert fu.attempts == 1
        assert fu.scheduled_at == NOW + timedelta(days=1)
        assert fu.last_attempt_at == NOW

    def test_last_attempt_marks_sent(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY + timedelta(days=3))
        fu = scheduled_followup(db, invoice, "approaching_deadline", attempts=2, max_attempts=3)

        delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert fu.status == FollowUpStatus.SENT.value
        assert fu.attempts == 3
        assert db.query(FollowUpEvent).filter(FollowUpEvent.event == "followup_sent").count() == 1

    def test_future_followups_are_not_due(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY + timedelta(days=3))
        scheduled_followup(db, invoice, "approaching_deadline", scheduled_at=NOW + timedelta(hours=1))

        results = delivery_pass(db, sink, rule_store, now=NOW)

        assert results["total"] == 0
        assert sink.sent == []


# =============================================================================
# ORDERING
# =============================================================================

class TestOrdering:

    def test_high_priority_first(self, db, make_invoice):
        low = make_invoice(due_date=TODAY - timedelta(days=1))
        high = make_invoice(due_date=TODAY - timedelta(days=5))
        scheduled_followup(db, low, "overdue", priority="medium", scheduled_at=NOW - timedelta(days=3))
        scheduled_followup(db, high, "overdue", priority="high", scheduled_at=NOW - timedelta(hours=1))

        ordered = due_followups(db, NOW)

        assert [fu.entity_id for fu in ordered] == [high.id, low.id]

    def test_read_window_is_bounded_by_limit(self, db, make_invoice, monkeypatch):
        monkeypatch.setattr(delivery, "DELIVERY_SCAN_FACTOR", 1)
        oldest = make_invoice(due_date=TODAY - timedelta(days=1))
        older = make_invoice(due_date=TODAY - timedelta(days=1))
        newest = make_invoice(due_date=TODAY - timedelta(days=5))
        scheduled_followup(db, oldest, "overdue", scheduled_at=NOW - timedelta(hours=3))
        scheduled_followup(db, older, "overdue", scheduled_at=NOW - timedelta(hours=2))
        scheduled_followup(db, newest, "overdue", priority="high", scheduled_at=NOW - timedelta(hours=1))

        # Only the two oldest due rows are read; the newer high-priority row waits
        assert [fu.entity_id for fu in due_followups(db, NOW, limit=2)] == [oldest.id, older.id]

        monkeypatch.setattr(delivery, "DELIVERY_SCAN_FACTOR", 10)
        assert [fu.entity_id for fu in due_followups(db, NOW, limit=2)] == [newest.id, oldest.id]

    def test_one_followup_per_entity_per_pass(self, db, rule_store, sink, make_quote):
        quote = make_quote(status="sent", sent_at=NOW - timedelta(days=3))
        scheduled_followup(db, quote, "not_viewed", entity_type="quote", stage=2, priority="high")
        # Second type on the same quote, as a partially migrated dataset might have
        scheduled_followup(db, quote, "viewed_instant", entity_type="quote", stage=1)

        results = delivery_pass(db, sink, rule_store, now=NOW)

        assert len(sink.sent) == 1
        assert results["high_priority"] == 1


# =============================================================================
# RE-CHECKS BEFORE SENDING
# =============================================================================

class TestRechecks:

    def test_finalized_parent_is_stopped_not_sent(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(status="paid", due_date=TODAY - timedelta(days=2))
        fu = scheduled_followup(db, invoice, "overdue")

        results = delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert results["stopped"] == 1
        assert fu.status == FollowUpStatus.STOPPED.value
        assert sink.sent == []

    def test_not_viewed_on_viewed_quote_is_superseded(self, db, rule_store, sink, make_quote):
        quote = make_quote(status="viewed")
        fu = scheduled_followup(db, quote, "not_viewed", entity_type="quote", stage=2)

        results = delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert results["superseded"] == 1
        assert fu.status == FollowUpStatus.STOPPED.value
        assert fu.meta["stopped_reason"] == "superseded"

    def test_approaching_on_past_due_invoice_is_superseded(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=1))
        fu = scheduled_followup(db, invoice, "approaching_deadline")

        delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert fu.status == FollowUpStatus.STOPPED.value
        assert sink.sent == []

    def test_leftover_placeholders_get_fresh_values(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=4))
        scheduled_followup(db, invoice, "overdue", text="En retard de {days_overdue} jour(s)")

        delivery_pass(db, sink, rule_store, now=NOW)

        assert sink.sent[0].text == "En retard de 4 jour(s)"


# =============================================================================
# FAILURES
# =============================================================================

class TestFailures:

    def test_sink_error_marks_failed(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=2))
        fu = scheduled_followup(db, invoice, "overdue")
        failing = MagicMock()
        failing.name = "failing"
        failing.send.side_effect = NotificationError("Resend error: 422 invalid recipient")

        results = delivery_pass(db, failing, rule_store, now=NOW)

        db.refresh(fu)
        assert results["failed"] == 1
        assert fu.status == FollowUpStatus.FAILED.value
        assert fu.attempts == 1
        assert "422" in fu.last_error
        assert db.query(FollowUpEvent).filter(FollowUpEvent.event == "followup_failed").count() == 1

    def test_missing_client_email_marks_failed(self, db, rule_store, sink, make_client, make_invoice):
        no_email = make_client(email=None)
        invoice = make_invoice(due_date=TODAY - timedelta(days=2), client_id=no_email.id)
        fu = scheduled_followup(db, invoice, "overdue")

        delivery_pass(db, sink, rule_store, now=NOW)

        db.refresh(fu)
        assert fu.status == FollowUpStatus.FAILED.value
        assert fu.last_error == "Missing client email"


# =============================================================================
# SINKS
# =============================================================================

def _message():
    return OutboundMessage(follow_up_id="fu-1", to_email="jeanne@example.com", subject="Relance", text="Bonjour")


class TestSinks:

    def test_resend_posts_message(self):
        captured = {}

        def handler(request):
            captured["auth"] = request.headers["Authorization"]
            captured["url"] = str(request.url)
            return httpx.Response(200, json={"id": "msg_123"})

        sink = ResendSink(api_key="re_test", client=httpx.Client(transport=httpx.MockTransport(handler)))
        result = sink.send(_message())

        assert result == {"provider_message_id": "msg_123"}
        assert captured["auth"] == "Bearer re_test"
        assert captured["url"].endswith("/emails")

    def test_resend_error_raises_notification_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "bad"}))
        sink = ResendSink(api_key="re_test", client=httpx.Client(transport=transport))

        with pytest.raises(NotificationError):
            sink.send(_message())

    def test_simulated_sink_keeps_messages(self):
        sink = SimulatedSink()
        assert sink.send(_message()) == {"provider_message_id": "simulated"}
        assert len(sink.sent) == 1
