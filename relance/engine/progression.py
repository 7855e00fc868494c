"""
Relance - Stage Progression Manager
Advances follow-ups whose current stage is exhausted (status 'sent') to
the next stage, or closes them once every stage has been used.

    sent, attempts < max_attempts   -> left as-is
    sent, next stage <= max_stages  -> scheduled, stage + 1, attempts reset
    sent, next stage >  max_stages  -> all_stages_completed
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from relance.models import (
    FollowUp, FollowUpRule, FollowUpStatus, FollowUpType, EntityType, Priority,
)
from relance.errors import InvalidTransition
from relance.audit import audit
from relance.gateway import find_entity
from relance.rules import RuleStore
from relance.engine.eligibility import overdue_trigger_time
from relance.engine.lifecycle import REASON_SUPERSEDED

logger = logging.getLogger(__name__)

REASON_WOULD_EXPIRE = "would_expire_before_next_stage"


def current_stage_for(
    db: Session,
    entity_type: EntityType,
    entity_id: str,
    follow_up_type: FollowUpType,
) -> Optional[int]:
    """Stage of the most recent follow-up for this key, if any."""
    latest = db.query(FollowUp).filter(
        FollowUp.entity_type == EntityType(entity_type).value,
        FollowUp.entity_id == entity_id,
        FollowUp.follow_up_type == FollowUpType(follow_up_type).value,
    ).order_by(FollowUp.created_at.desc(), FollowUp.id.desc()).first()
    return latest.stage if latest else None


def next_trigger_time(followup: FollowUp, entity, rule: FollowUpRule, next_stage: int, now: datetime) -> datetime:
    """
    Overdue reminders stay anchored on the due date (D+1, D+3, D+7).
    Everything else counts the stage delay from now.
    """
    if followup.follow_up_type == FollowUpType.OVERDUE.value and getattr(entity, "due_date", None):
        return max(overdue_trigger_time(entity.due_date, rule, next_stage), now)
    return now + timedelta(days=rule.delay_for(next_stage))


def advance(
    db: Session,
    followup: FollowUp,
    entity,
    rule: FollowUpRule,
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
) -> str:
    """
    Progress one 'sent' follow-up. Returns 'unchanged', 'progressed',
    'completed' or 'stopped'. Does not commit.
    """
    now = now or datetime.utcnow()
    if followup.attempts < followup.max_attempts:
        return "unchanged"

    previous_stage = followup.stage
    next_stage = previous_stage + 1

    if next_stage > rule.max_stages:
        followup.transition_to(FollowUpStatus.ALL_STAGES_COMPLETED)
        followup.updated_at = now
        followup.update_meta(completed_stage=previous_stage, completed_at=now)
        audit(
            db, "all_stages_completed",
            entity_type=followup.entity_type, entity_id=followup.entity_id,
            follow_up_id=followup.followup_id, actor="scheduler", request_id=request_id,
            payload={"stage": previous_stage, "max_stages": rule.max_stages},
        )
        logger.info(f"Follow-up {followup.followup_id} completed all {rule.max_stages} stages")
        return "completed"

    scheduled_at = next_trigger_time(followup, entity, rule, next_stage, now)

    valid_until = getattr(entity, "valid_until", None)
    if valid_until and scheduled_at > valid_until:
        followup.transition_to(FollowUpStatus.STOPPED)
        followup.updated_at = now
        followup.update_meta(stopped_reason=REASON_WOULD_EXPIRE, stopped_at=now)
        audit(
            db, "followups_stopped",
            entity_type=followup.entity_type, entity_id=followup.entity_id,
            follow_up_id=followup.followup_id, actor="scheduler", request_id=request_id,
            payload={
                "reason": REASON_WOULD_EXPIRE,
                "next_stage": next_stage,
                "next_scheduled_at": scheduled_at.isoformat(),
                "valid_until": valid_until.isoformat(),
            },
        )
        logger.info(f"Follow-up {followup.followup_id} stopped: quote expires before stage {next_stage}")
        return "stopped"

    try:
        with db.begin_nested():
            followup.transition_to(FollowUpStatus.SCHEDULED)
            followup.stage = next_stage
            followup.attempts = 0
            followup.max_attempts = rule.max_attempts_for(FollowUpType(followup.follow_up_type))
            followup.scheduled_at = scheduled_at
            followup.updated_at = now
            followup.update_meta(
                stage_progressed=True,
                previous_stage=previous_stage,
                completed_stage=previous_stage,
                priority=Priority.HIGH,
                progressed_at=now,
            )
            db.flush()
    except IntegrityError:
        # Another active row already holds this key; it carries on instead
        followup.transition_to(FollowUpStatus.STOPPED)
        followup.updated_at = now
        followup.update_meta(stopped_reason=REASON_SUPERSEDED, stopped_at=now)
        logger.warning(f"Follow-up {followup.followup_id}: active duplicate exists, stopped instead of progressing")
        return "stopped"

    audit(
        db, f"stage_{previous_stage}_completed",
        entity_type=followup.entity_type, entity_id=followup.entity_id,
        follow_up_id=followup.followup_id, actor="scheduler", request_id=request_id,
        payload={
            "follow_up_type": followup.follow_up_type,
            "next_stage": next_stage,
            "scheduled_at": scheduled_at.isoformat(),
        },
    )
    logger.info(
        f"Follow-up {followup.followup_id} ({followup.follow_up_type}) "
        f"progressed to stage {next_stage}, scheduled {scheduled_at:%Y-%m-%d %H:%M}"
    )
    return "progressed"


def progression_pass(
    db: Session,
    rule_store: RuleStore,
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
) -> dict:
    """
    Advance every 'sent' follow-up whose parent is still open.
    Sent rows of finalized parents are left untouched.
    """
    now = now or datetime.utcnow()
    results = {"progressed": 0, "completed": 0, "stopped": 0, "unchanged": 0, "skipped": 0, "errors": 0}

    followups = db.query(FollowUp).filter(
        FollowUp.status == FollowUpStatus.SENT.value
    ).order_by(FollowUp.id.asc()).all()

    for fu in followups:
        try:
            entity = find_entity(db, fu.entity_type, fu.entity_id)
            if entity is None:
                logger.warning(f"Follow-up {fu.followup_id}: {fu.entity_type} {fu.entity_id} not found; skipping")
                results["skipped"] += 1
                continue
            if entity.terminal_status(now):
                results["skipped"] += 1
                continue

            outcome = advance(db, fu, entity, rule_store.get(fu.entity_type), now=now, request_id=request_id)
            db.commit()
            results[outcome] += 1
        except (SQLAlchemyError, InvalidTransition) as e:
            db.rollback()
            results["errors"] += 1
            logger.error(f"Progression failed for follow-up {fu.followup_id}: {e}")

    logger.info(f"Progression pass: {results}")
    return results
