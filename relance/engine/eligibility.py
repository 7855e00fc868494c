"""
Relance - Eligibility Evaluator
Pure decision: given one tracked entity, its rule and the current time,
return an Eligibility (type, stage, trigger time, priority) or None.
No database access. Day differences use calendar days, truncated at
midnight, so results do not flip back and forth within a day.
"""
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional, Union
from relance.models import (
    EntityType, Eligibility, FollowUpRule, FollowUpType, Priority,
    QuoteStatus, InvoiceStatus, TrackedEntity, TrackedQuote, TrackedInvoice,
)

logger = logging.getLogger(__name__)

# Stage 1 of a quote is the original send, so the first reminder is stage 2
QUOTE_FIRST_FOLLOWUP_STAGE = 2


def to_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def start_of_day(value: Union[date, datetime]) -> datetime:
    return datetime.combine(to_date(value), time.min)


def calendar_days_between(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    """Whole calendar days from start to end (negative if end is earlier)."""
    return (to_date(end) - to_date(start)).days


class QuoteEvaluator:
    """Follow-up decisions for quotes (not viewed / viewed without answer)."""

    entity_type = EntityType.QUOTE

    def evaluate(
        self,
        quote: TrackedQuote,
        rule: FollowUpRule,
        now: datetime,
        current_stage: Optional[int] = None,
        catch_up: bool = False,
    ) -> Optional[Eligibility]:
        # Terminal outcome, regardless of timestamps
        if quote.status in (QuoteStatus.ACCEPTED, QuoteStatus.REJECTED):
            return None

        if quote.valid_until and quote.valid_until < now:
            return None

        if quote.status == QuoteStatus.VIEWED:
            if not rule.instant_view_followup:
                return None
            return Eligibility(
                follow_up_type=FollowUpType.VIEWED_INSTANT,
                stage=1,
                scheduled_at=now,
                priority=Priority.MEDIUM,
            )

        if quote.status == QuoteStatus.SENT:
            if rule.max_stages < QUOTE_FIRST_FOLLOWUP_STAGE:
                logger.debug(f"Quote rule has {rule.max_stages} stage(s); no not-viewed reminder possible")
                return None
            if quote.sent_at is not None:
                days_since_sent = calendar_days_between(quote.sent_at, now)
                if days_since_sent < rule.delay_for(QUOTE_FIRST_FOLLOWUP_STAGE):
                    return None
            return Eligibility(
                follow_up_type=FollowUpType.NOT_VIEWED,
                stage=QUOTE_FIRST_FOLLOWUP_STAGE,
                scheduled_at=now,
                priority=Priority.HIGH,
            )

        return None


class InvoiceEvaluator:
    """Follow-up decisions for invoices (approaching deadline / overdue)."""

    entity_type = EntityType.INVOICE

    def evaluate(
        self,
        invoice: TrackedInvoice,
        rule: FollowUpRule,
        now: datetime,
        current_stage: Optional[int] = None,
        catch_up: bool = False,
    ) -> Optional[Eligibility]:
        if invoice.due_date is None:
            return None

        days_until_due = calendar_days_between(now, invoice.due_date)

        if invoice.status == InvoiceStatus.UNPAID and self._approaching(days_until_due, rule, catch_up):
            scheduled_at = start_of_day(invoice.due_date) - timedelta(days=rule.approaching_deadline_days)
            return Eligibility(
                follow_up_type=FollowUpType.APPROACHING_DEADLINE,
                stage=1,
                scheduled_at=max(scheduled_at, now) if catch_up else scheduled_at,
                priority=Priority.MEDIUM,
                days_until_due=days_until_due,
            )

        if days_until_due < 0 and invoice.status in (InvoiceStatus.UNPAID, InvoiceStatus.OVERDUE):
            stage = min(max(current_stage or 1, 1), rule.max_stages)
            return Eligibility(
                follow_up_type=FollowUpType.OVERDUE,
                stage=stage,
                scheduled_at=overdue_trigger_time(invoice.due_date, rule, stage),
                priority=Priority.HIGH if stage > 1 else Priority.MEDIUM,
                days_overdue=-days_until_due,
            )

        return None

    @staticmethod
    def _approaching(days_until_due: int, rule: FollowUpRule, catch_up: bool) -> bool:
        window = rule.approaching_deadline_days
        if window <= 0:
            return False
        if catch_up:
            return 0 < days_until_due <= window
        return days_until_due == window


def overdue_trigger_time(due_date: date, rule: FollowUpRule, stage: int) -> datetime:
    """Overdue stages are anchored on the due date: due_date + stage_delays[stage]."""
    return start_of_day(due_date) + timedelta(days=rule.delay_for(stage))


EVALUATORS = {
    EntityType.QUOTE: QuoteEvaluator(),
    EntityType.INVOICE: InvoiceEvaluator(),
}


def evaluate(
    entity: TrackedEntity,
    rule: FollowUpRule,
    now: datetime,
    current_stage: Optional[int] = None,
    catch_up: bool = False,
) -> Optional[Eligibility]:
    """Evaluate any tracked entity with the evaluator registered for its type."""
    evaluator = EVALUATORS[EntityType(entity.entity_type)]
    return evaluator.evaluate(entity, rule, now, current_stage=current_stage, catch_up=catch_up)
