"""
Tests for stage progression: attempt reset, stage bound, overdue cadence.
"""
from datetime import timedelta

from conftest import NOW, TODAY, followups_for
from relance.models import FollowUp, FollowUpEvent, FollowUpStatus, FollowUpType
from relance.engine.dispatcher import Dispatcher
from relance.engine.delivery import delivery_pass
from relance.engine.eligibility import start_of_day
from relance.engine.progression import current_stage_for, progression_pass


def sent_followup(db, entity, follow_up_type, stage, attempts=1, max_attempts=1, entity_type="invoice"):
    fu = FollowUp(
        entity_type=entity_type, entity_id=entity.id, client_id=entity.client_id,
        follow_up_type=follow_up_type, stage=stage, status="sent",
        scheduled_at=NOW - timedelta(days=1), attempts=attempts, max_attempts=max_attempts,
        meta={"priority": "medium"}, created_at=NOW - timedelta(days=1),
    )
    db.add(fu)
    db.commit()
    return fu


# =============================================================================
# ADVANCING
# =============================================================================

class TestAdvance:

    def test_exhausted_stage_moves_to_next_with_attempts_reset(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY + timedelta(days=2))
        fu = sent_followup(db, invoice, "approaching_deadline", stage=1, attempts=3, max_attempts=3)

        results = progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert results["progressed"] == 1
        assert fu.status == FollowUpStatus.SCHEDULED.value
        assert fu.stage == 2
        assert fu.attempts == 0
        assert fu.max_attempts == 3
        assert fu.scheduled_at == NOW + timedelta(days=3)
        assert fu.meta["stage_progressed"] is True
        assert fu.meta["previous_stage"] == 1
        assert fu.meta["completed_stage"] == 1
        assert fu.meta["priority"] == "high"
        assert db.query(FollowUpEvent).filter(FollowUpEvent.event == "stage_1_completed").count() == 1

    def test_attempts_left_means_unchanged(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=2))
        fu = sent_followup(db, invoice, "overdue", stage=1, attempts=1, max_attempts=3)

        results = progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert results["unchanged"] == 1
        assert fu.status == FollowUpStatus.SENT.value
        assert fu.stage == 1

    def test_last_stage_completes(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=10))
        fu = sent_followup(db, invoice, "overdue", stage=3)

        results = progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert results["completed"] == 1
        assert fu.status == FollowUpStatus.ALL_STAGES_COMPLETED.value
        assert fu.stage == 3
        assert fu.meta["completed_stage"] == 3

    def test_completed_key_is_never_recreated(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=10))
        sent_followup(db, invoice, "overdue", stage=3)
        progression_pass(db, rule_store, now=NOW)

        Dispatcher(rule_store).dispatch_pass(db, now=NOW + timedelta(days=1))

        assert len(followups_for(db, invoice.id)) == 1

    def test_stage_never_exceeds_max_stages(self, db, rule_store, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=1))
        fu = sent_followup(db, invoice, "overdue", stage=1)

        for day in range(12):
            now = NOW + timedelta(days=day)
            progression_pass(db, rule_store, now=now)
            db.refresh(fu)
            if fu.status == "scheduled":
                fu.status = "sent"
                fu.attempts = fu.max_attempts
                db.commit()
            assert fu.stage <= 3

        assert fu.status == FollowUpStatus.ALL_STAGES_COMPLETED.value

    def test_finalized_parent_is_left_alone(self, db, rule_store, make_invoice):
        invoice = make_invoice(status="paid", due_date=TODAY - timedelta(days=3))
        fu = sent_followup(db, invoice, "overdue", stage=1)

        results = progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert results["skipped"] == 1
        assert fu.status == FollowUpStatus.SENT.value


# =============================================================================
# QUOTES
# =============================================================================

class TestQuoteProgression:

    def test_not_viewed_advances_to_stage_3(self, db, rule_store, make_quote):
        quote = make_quote(status="sent", sent_at=NOW - timedelta(days=5), valid_until=NOW + timedelta(days=30))
        fu = sent_followup(db, quote, "not_viewed", stage=2, attempts=3, max_attempts=3, entity_type="quote")

        progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert fu.stage == 3
        assert fu.scheduled_at == NOW + timedelta(days=5)

    def test_stops_when_quote_would_expire_first(self, db, rule_store, make_quote):
        quote = make_quote(status="sent", sent_at=NOW - timedelta(days=5), valid_until=NOW + timedelta(days=2))
        fu = sent_followup(db, quote, "not_viewed", stage=2, attempts=3, max_attempts=3, entity_type="quote")

        results = progression_pass(db, rule_store, now=NOW)

        db.refresh(fu)
        assert results["stopped"] == 1
        assert fu.status == FollowUpStatus.STOPPED.value
        assert fu.meta["stopped_reason"] == "would_expire_before_next_stage"

    def test_expiry_stop_is_not_recreated(self, db, rule_store, make_quote):
        quote = make_quote(status="sent", sent_at=NOW - timedelta(days=5), valid_until=NOW + timedelta(days=2))
        sent_followup(db, quote, "not_viewed", stage=2, attempts=3, max_attempts=3, entity_type="quote")
        progression_pass(db, rule_store, now=NOW)

        results = Dispatcher(rule_store).dispatch_pass(db, now=NOW + timedelta(hours=1))

        assert results["created"] == 0
        assert len(followups_for(db, quote.id)) == 1


# =============================================================================
# OVERDUE CADENCE (D+1, D+3, D+7)
# =============================================================================

class TestOverdueCadence:

    def test_unpaid_invoice_walks_d1_d3_d7(self, db, rule_store, sink, make_invoice):
        invoice = make_invoice(due_date=TODAY)
        due = start_of_day(TODAY)
        dispatcher = Dispatcher(rule_store)

        # Due today: nothing yet
        dispatcher.dispatch_pass(db, now=NOW)
        assert followups_for(db, invoice.id, "overdue") == []

        # D+1: stage 1 created for D+1 and delivered
        day1 = due + timedelta(days=1, hours=9)
        dispatcher.dispatch_pass(db, now=day1)
        [fu] = followups_for(db, invoice.id, "overdue")
        assert fu.stage == 1
        assert fu.scheduled_at == due + timedelta(days=1)

        delivery_pass(db, sink, rule_store, now=day1)
        db.refresh(fu)
        assert fu.status == FollowUpStatus.SENT.value

        # Progression: stage 2 at D+3
        progression_pass(db, rule_store, now=day1 + timedelta(hours=1))
        db.refresh(fu)
        assert fu.stage == 2
        assert fu.attempts == 0
        assert fu.scheduled_at == due + timedelta(days=3)

        # Not due before D+3
        results = delivery_pass(db, sink, rule_store, now=due + timedelta(days=2))
        assert results["total"] == 0

        day3 = due + timedelta(days=3, hours=9)
        delivery_pass(db, sink, rule_store, now=day3)
        progression_pass(db, rule_store, now=day3)
        db.refresh(fu)
        assert fu.stage == 3
        assert fu.scheduled_at == due + timedelta(days=7)

        day7 = due + timedelta(days=7, hours=9)
        delivery_pass(db, sink, rule_store, now=day7)
        progression_pass(db, rule_store, now=day7)
        db.refresh(fu)
        assert fu.status == FollowUpStatus.ALL_STAGES_COMPLETED.value
        assert len(sink.sent) == 3

    def test_current_stage_for_reads_latest_record(self, db, make_invoice):
        invoice = make_invoice(due_date=TODAY - timedelta(days=5))
        assert current_stage_for(db, "invoice", invoice.id, FollowUpType.OVERDUE) is None

        sent_followup(db, invoice, "overdue", stage=2)
        assert current_stage_for(db, "invoice", invoice.id, FollowUpType.OVERDUE) == 2
