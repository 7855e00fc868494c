"""
Relance - Follow-up Event Log
Every follow-up state change writes to followup_events with request_id,
actor, and payload.
"""
import uuid
import logging
from typing import Optional
from sqlalchemy.orm import Session
from relance.models import FollowUpEvent

logger = logging.getLogger(__name__)


def gen_request_id() -> str:
    """Generate a unique request ID for tracing one invocation."""
    return f"req-{uuid.uuid4().hex[:12]}"


def audit(
    db: Session,
    event: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    follow_up_id: Optional[str] = None,
    actor: str = "system",
    request_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> FollowUpEvent:
    """
    Write a follow-up event.

    Events follow this convention:
      followup_created, followup_superseded, followups_stopped,
      followup_sent, followup_failed, stage_<n>_completed,
      all_stages_completed
    """
    entry = FollowUpEvent(
        request_id=request_id or gen_request_id(),
        event=event,
        entity_type=entity_type,
        entity_id=entity_id,
        follow_up_id=follow_up_id,
        actor=actor,
        payload=payload or {},
    )
    db.add(entry)
    # Caller owns the transaction
    logger.debug(f"EVENT [{event}] {entity_type}={entity_id} follow_up={follow_up_id} actor={actor}")
    return entry
