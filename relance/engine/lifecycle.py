"""
Relance - Lifecycle Cleaner
No reminder may go out once its quote or invoice is finalized.
Stops every pending/scheduled follow-up of a terminal entity. Invoked
synchronously by the business app at the moment of transition, and as a
sweep in every batch run. Stopping is idempotent.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from relance.models import (
    FollowUp, FollowUpStatus, FollowUpType, EntityType, ACTIVE_STATUSES,
)
from relance.audit import audit
from relance.gateway import find_entity

logger = logging.getLogger(__name__)

REASON_FINALIZED = "entity_finalized"
REASON_SUPERSEDED = "superseded"


def _active_followups(db: Session, entity_type: EntityType, entity_id: str, types=None):
    q = db.query(FollowUp).filter(
        FollowUp.entity_type == EntityType(entity_type).value,
        FollowUp.entity_id == entity_id,
        FollowUp.status.in_(ACTIVE_STATUSES),
    )
    if types:
        q = q.filter(FollowUp.follow_up_type.in_([FollowUpType(t).value for t in types]))
    return q.all()


def _stop(followup: FollowUp, reason: str, now: datetime, final_status: Optional[str] = None):
    followup.transition_to(FollowUpStatus.STOPPED)
    followup.updated_at = now
    followup.update_meta(stopped_reason=reason, stopped_at=now, final_status=final_status)


def stop_for_entity(
    db: Session,
    entity_type: EntityType,
    entity_id: str,
    final_status: str,
    reason: str = REASON_FINALIZED,
    triggered_by: str = "scheduler",
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
    always_record: bool = False,
) -> int:
    """
    Stop all active follow-ups of an entity. Returns how many were stopped.
    Does not commit; the caller owns the transaction.
    """
    now = now or datetime.utcnow()
    followups = _active_followups(db, entity_type, entity_id)
    for fu in followups:
        _stop(fu, reason, now, final_status=final_status)
        logger.info(f"Stopped follow-up {fu.followup_id} ({fu.follow_up_type}, stage {fu.stage}): {reason}")

    if followups or always_record:
        audit(
            db, "followups_stopped",
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            actor=triggered_by,
            request_id=request_id,
            payload={
                "reason": reason,
                "final_status": final_status,
                "stopped": len(followups),
                "follow_up_ids": [fu.followup_id for fu in followups],
                "timestamp": now.isoformat(),
            },
        )
    return len(followups)


def supersede(
    db: Session,
    entity_type: EntityType,
    entity_id: str,
    follow_up_types: Iterable[FollowUpType],
    replaced_by: Optional[FollowUpType] = None,
    actor: str = "scheduler",
    request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Stop active follow-ups of the given types (e.g. not_viewed once the quote is viewed)."""
    now = now or datetime.utcnow()
    types = list(follow_up_types)
    if not types:
        return 0
    followups = _active_followups(db, entity_type, entity_id, types=types)
    for fu in followups:
        _stop(fu, REASON_SUPERSEDED, now)
        audit(
            db, "followup_superseded",
            entity_type=fu.entity_type, entity_id=entity_id,
            follow_up_id=fu.followup_id, actor=actor, request_id=request_id,
            payload={
                "follow_up_type": fu.follow_up_type,
                "replaced_by": FollowUpType(replaced_by).value if replaced_by else None,
            },
        )
    return len(followups)


def cleanup_pass(db: Session, now: Optional[datetime] = None, request_id: Optional[str] = None) -> dict:
    """
    Sweep: every entity that still has active follow-ups but has become
    terminal gets them stopped. One transaction per entity.
    """
    now = now or datetime.utcnow()
    results = {"entities": 0, "stopped": 0, "errors": 0}

    keys = db.query(FollowUp.entity_type, FollowUp.entity_id).filter(
        FollowUp.status.in_(ACTIVE_STATUSES)
    ).distinct().all()

    for entity_type, entity_id in keys:
        try:
            entity = find_entity(db, entity_type, entity_id)
            if entity is None:
                logger.warning(f"Active follow-ups reference missing {entity_type} {entity_id}; skipping")
                continue
            final_status = entity.terminal_status(now)
            if final_status is None:
                continue
            stopped = stop_for_entity(
                db, entity_type, entity_id, final_status,
                triggered_by="scheduler", request_id=request_id, now=now,
            )
            db.commit()
            results["entities"] += 1
            results["stopped"] += stopped
        except SQLAlchemyError as e:
            db.rollback()
            results["errors"] += 1
            logger.error(f"Cleanup failed for {entity_type} {entity_id}: {e}")

    if results["stopped"]:
        logger.info(f"Cleanup pass: {results}")
    return results
