"""
Relance - Delivery Pass
Hands due follow-ups to the notification sink and does the attempt
accounting. Highest priority first, at most one reminder per entity per
pass. The parent entity is re-checked right before sending.

    attempts + 1 < max_attempts  -> stays scheduled, retried after retry_delay_days
    attempts + 1 = max_attempts  -> sent (Stage Progression takes over)
    sink error                   -> failed
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from relance.models import (
    Client, FollowUp, FollowUpStatus, FollowUpType, Priority, QuoteStatus,
)
from relance.errors import InvalidTransition, NotificationError
from relance.audit import audit
from relance.gateway import find_entity
from relance.rules import RuleStore
from relance.integrations.notification_sink import NotificationSink, OutboundMessage
from relance.engine.eligibility import calendar_days_between
from relance.engine.templates import build_variables, render
from relance.engine.lifecycle import stop_for_entity, supersede
from relance.config import DELIVERY_LIMIT, DELIVERY_SCAN_FACTOR

logger = logging.getLogger(__name__)


def due_followups(db: Session, now: datetime, limit: int = DELIVERY_LIMIT) -> list[FollowUp]:
    """
    Scheduled follow-ups whose trigger time has passed, highest priority first.
    Reads at most limit * DELIVERY_SCAN_FACTOR of the oldest due rows.
    """
    rows = db.query(FollowUp).filter(
        FollowUp.status == FollowUpStatus.SCHEDULED.value,
        FollowUp.scheduled_at <= now,
    ).order_by(FollowUp.scheduled_at.asc(), FollowUp.id.asc()).limit(limit * DELIVERY_SCAN_FACTOR).all()
    # Priority lives in the meta JSON, so order the window here rather than in SQL
    rows.sort(key=lambda fu: -fu.meta_model.priority.rank)
    return rows[:limit]


def still_applicable(followup: FollowUp, entity, now: datetime) -> bool:
    """Whether the reason this follow-up was created still holds."""
    follow_up_type = FollowUpType(followup.follow_up_type)
    if follow_up_type == FollowUpType.NOT_VIEWED:
        return entity.status == QuoteStatus.SENT
    if follow_up_type == FollowUpType.VIEWED_INSTANT:
        return entity.status == QuoteStatus.VIEWED
    if follow_up_type == FollowUpType.APPROACHING_DEADLINE:
        return entity.due_date is None or calendar_days_between(now, entity.due_date) >= 0
    return True


def _fail(db: Session, followup: FollowUp, error: str, now: datetime, request_id: Optional[str]):
    followup.transition_to(FollowUpStatus.FAILED)
    followup.attempts += 1
    followup.last_error = error
    followup.last_attempt_at = now
    followup.updated_at = now
    audit(
        db, "followup_failed",
        entity_type=followup.entity_type, entity_id=followup.entity_id,
        follow_up_id=followup.followup_id, actor="dispatcher", request_id=request_id,
        payload={
            "stage": followup.stage,
            "follow_up_type": followup.follow_up_type,
            "attempts": followup.attempts,
            "error": error,
        },
    )
    logger.error(f"Follow-up {followup.followup_id} failed: {error}")


def deliver_followup(
    db: Session,
    followup: FollowUp,
    sink: NotificationSink,
    rule_store: RuleStore,
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
) -> str:
    """
    Deliver one due follow-up. Returns 'sent', 'stopped', 'superseded',
    'failed' or 'skipped'. Does not commit.
    """
    now = now or datetime.utcnow()
    if followup.status != FollowUpStatus.SCHEDULED.value:
        # Stopped earlier in this pass with the rest of its entity
        return "skipped"

    entity = find_entity(db, followup.entity_type, followup.entity_id)
    if entity is None:
        logger.warning(f"Follow-up {followup.followup_id}: {followup.entity_type} {followup.entity_id} not found")
        return "skipped"

    final_status = entity.terminal_status(now)
    if final_status:
        stop_for_entity(
            db, followup.entity_type, followup.entity_id, final_status,
            triggered_by="dispatcher", request_id=request_id, now=now,
        )
        return "stopped"

    if not still_applicable(followup, entity, now):
        supersede(
            db, followup.entity_type, followup.entity_id, [followup.follow_up_type],
            actor="dispatcher", request_id=request_id, now=now,
        )
        return "superseded"

    client = db.query(Client).filter(Client.id == followup.client_id).first() if followup.client_id else None
    if not client or not client.email:
        _fail(db, followup, "Missing client email", now, request_id)
        return "failed"

    # Cached content was rendered at creation; only leftover tokens get fresh values
    variables = build_variables(entity, client, now)
    message = OutboundMessage(
        follow_up_id=followup.followup_id,
        to_email=client.email,
        subject=render(followup.subject, variables),
        text=render(followup.text_content, variables),
        html=render(followup.html_content, variables),
        email_type=followup.follow_up_type,
    )

    try:
        response = sink.send(message)
    except NotificationError as e:
        _fail(db, followup, str(e), now, request_id)
        return "failed"

    rule = rule_store.get(followup.entity_type)
    followup.attempts += 1
    followup.last_attempt_at = now
    followup.last_error = None
    followup.updated_at = now
    if followup.attempts < followup.max_attempts:
        followup.transition_to(FollowUpStatus.SCHEDULED)
        followup.scheduled_at = now + timedelta(days=rule.retry_delay_days)
    else:
        followup.transition_to(FollowUpStatus.SENT)

    audit(
        db, "followup_sent",
        entity_type=followup.entity_type, entity_id=followup.entity_id,
        follow_up_id=followup.followup_id, actor="dispatcher", request_id=request_id,
        payload={
            "stage": followup.stage,
            "follow_up_type": followup.follow_up_type,
            "attempts": followup.attempts,
            "max_attempts": followup.max_attempts,
            "priority": followup.meta_model.priority.value,
            "client_email": client.email,
            "sink": sink.name,
            "provider_message_id": response.get("provider_message_id"),
        },
    )
    logger.info(
        f"Sent {followup.follow_up_type} follow-up {followup.followup_id} to {client.email} "
        f"(stage {followup.stage}, attempt {followup.attempts}/{followup.max_attempts})"
    )
    return "sent"


def delivery_pass(
    db: Session,
    sink: NotificationSink,
    rule_store: RuleStore,
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
    limit: int = DELIVERY_LIMIT,
) -> dict:
    """Deliver every due follow-up, one per entity. One transaction per follow-up."""
    now = now or datetime.utcnow()
    followups = due_followups(db, now, limit=limit)
    results = {
        "high_priority": 0, "medium_priority": 0, "low_priority": 0,
        "failed": 0, "stopped": 0, "superseded": 0, "skipped": 0,
        "total": len(followups),
    }
    delivered = set()

    for fu in followups:
        key = (fu.entity_type, fu.entity_id)
        if key in delivered:
            continue
        priority = fu.meta_model.priority
        try:
            outcome = deliver_followup(db, fu, sink, rule_store, now=now, request_id=request_id)
            db.commit()
        except (SQLAlchemyError, InvalidTransition) as e:
            db.rollback()
            results["failed"] += 1
            logger.error(f"Delivery failed for follow-up {fu.followup_id}: {e}")
            continue

        if outcome == "sent":
            results[f"{Priority(priority).value}_priority"] += 1
            delivered.add(key)
        else:
            results[outcome] += 1

    logger.info(f"Delivery pass: {results}")
    return results
