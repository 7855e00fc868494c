"""
Relance - Dispatcher
Turns an eligible entity into at most one active FollowUp per
(entity, follow_up_type). Re-running the pass is always safe:

  1. Evaluate the entity (registry by entity_type).
  2. Skip if the key already has a pending/scheduled/sent/completed row,
     or failed recently (retry_delay_days) or too often (FAILED_RETRY_LIMIT).
  3. Resolve + render the template, then insert inside a SAVEPOINT.
     A unique-index conflict means another run won; that row stands.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from relance.models import (
    FollowUp, FollowUpMeta, FollowUpStatus, FollowUpType, EntityType,
    Eligibility, BLOCKING_STATUSES, ACTIVE_STATUSES, gen_uuid,
)
from relance.errors import (
    ConstraintViolation, EntityLookupError, InvalidTransition, PersistenceError,
)
from relance.audit import audit
from relance.gateway import candidate_entities, get_client
from relance.rules import RuleStore
from relance.engine.eligibility import evaluate
from relance.engine.templates import (
    TemplateResolver, DatabaseTemplateResolver, build_variables, resolve_message,
)
from relance.engine.lifecycle import supersede
from relance.engine.progression import current_stage_for, REASON_WOULD_EXPIRE
from relance.config import BATCH_LIMIT, FAILED_RETRY_LIMIT

logger = logging.getLogger(__name__)

# Creating the key on the left stops active follow-ups of the types on the right
SUPERSEDES = {
    FollowUpType.VIEWED_INSTANT: (FollowUpType.NOT_VIEWED,),
    FollowUpType.OVERDUE: (FollowUpType.APPROACHING_DEADLINE,),
}

# Follow-up types that pick up at the stage of their latest record
RESUMABLE_TYPES = (FollowUpType.OVERDUE,)

# A key stopped for one of these reasons is never recreated
FINAL_STOP_REASONS = (REASON_WOULD_EXPIRE,)


class Dispatcher:
    """Creates follow-ups for eligible entities."""

    def __init__(
        self,
        rule_store: RuleStore,
        resolver_factory: Callable[[Session], TemplateResolver] = DatabaseTemplateResolver,
    ):
        self.rule_store = rule_store
        self.resolver_factory = resolver_factory

    # ── Single entity ────────────────────────────────────────────

    def dispatch_entity(
        self,
        db: Session,
        entity,
        now: Optional[datetime] = None,
        catch_up: bool = False,
        source: str = "batch",
        actor: str = "scheduler",
        request_id: Optional[str] = None,
    ) -> dict:
        """
        Evaluate one entity and create its follow-up if needed.
        Returns {"outcome": "created" | "existing" | "retry_later" | "not_eligible", ...}.
        Does not commit. Raises EntityLookupError when the client is missing.
        """
        now = now or datetime.utcnow()
        rule = self.rule_store.get(entity.entity_type)

        eligibility = evaluate(entity, rule, now, catch_up=catch_up)
        if eligibility and eligibility.follow_up_type in RESUMABLE_TYPES:
            stage = current_stage_for(db, entity.entity_type, entity.id, eligibility.follow_up_type)
            if stage:
                eligibility = evaluate(entity, rule, now, current_stage=stage, catch_up=catch_up)

        if eligibility is None:
            return {"outcome": "not_eligible", "entity_type": entity.entity_type, "entity_id": entity.id}

        existing = self._blocking_followup(db, entity, eligibility.follow_up_type)
        if existing:
            logger.debug(
                f"{entity.entity_type} {entity.id}: {eligibility.follow_up_type.value} "
                f"already tracked by {existing.followup_id} ({existing.status})"
            )
            return self._result("existing", existing)

        failed = self._failed_backoff(db, entity, eligibility.follow_up_type, rule, now)
        if failed:
            logger.debug(
                f"{entity.entity_type} {entity.id}: {eligibility.follow_up_type.value} "
                f"held back by failed follow-up {failed.followup_id}"
            )
            return self._result("retry_later", failed)

        followup = self._build_followup(db, entity, eligibility, rule, now, source)

        try:
            self._insert(db, followup)
        except ConstraintViolation:
            winner = self._active_followup(db, entity, eligibility.follow_up_type)
            if winner is None:
                raise PersistenceError(
                    f"Insert conflict for {entity.entity_type} {entity.id} "
                    f"({eligibility.follow_up_type.value}) but no active row found"
                )
            logger.info(f"Concurrent create for {entity.entity_type} {entity.id}; keeping {winner.followup_id}")
            return self._result("existing", winner)

        superseded = supersede(
            db, entity.entity_type, entity.id,
            SUPERSEDES.get(eligibility.follow_up_type, ()),
            replaced_by=eligibility.follow_up_type,
            actor=actor, request_id=request_id, now=now,
        )

        audit(
            db, "followup_created",
            entity_type=entity.entity_type, entity_id=entity.id,
            follow_up_id=followup.followup_id, actor=actor, request_id=request_id,
            payload={
                "follow_up_type": followup.follow_up_type,
                "stage": followup.stage,
                "scheduled_at": followup.scheduled_at.isoformat(),
                "priority": eligibility.priority.value,
                "template_id": followup.template_id,
                "template_fallback": followup.meta_model.template_fallback,
                "superseded": superseded,
                "source": source,
            },
        )
        logger.info(
            f"Created {followup.follow_up_type} follow-up for {entity.entity_type} {entity.number} "
            f"(stage {followup.stage}, scheduled {followup.scheduled_at:%Y-%m-%d %H:%M})"
        )
        return self._result("created", followup)

    def _insert(self, db: Session, followup: FollowUp):
        """Insert inside a savepoint. Raises ConstraintViolation if the active key is taken."""
        try:
            with db.begin_nested():
                db.add(followup)
                db.flush()
        except IntegrityError as e:
            raise ConstraintViolation(str(e.orig)) from e

    def _build_followup(self, db, entity, eligibility: Eligibility, rule, now, source) -> FollowUp:
        client = get_client(db, entity.client_id)
        variables = build_variables(entity, client, now)
        message = resolve_message(
            self.resolver_factory(db),
            rule.template_id_by_type.get(eligibility.follow_up_type),
            entity.entity_type,
            variables,
            language=client.language_preference,
        )
        meta = FollowUpMeta(
            priority=eligibility.priority,
            source=source,
            template_fallback=message.fallback,
            days_overdue=eligibility.days_overdue,
            days_until_due=eligibility.days_until_due,
        )

        followup = FollowUp(
            followup_id=gen_uuid(),
            entity_type=entity.entity_type,
            entity_id=entity.id,
            client_id=entity.client_id,
            follow_up_type=eligibility.follow_up_type.value,
            stage=eligibility.stage,
            status=FollowUpStatus.PENDING.value,
            attempts=0,
            max_attempts=rule.max_attempts_for(eligibility.follow_up_type),
            template_id=message.template_id,
            subject=message.subject,
            text_content=message.text,
            html_content=message.html,
            meta=meta.to_json(),
            created_at=now,
            updated_at=now,
        )
        # Trigger time is known up front, so the row is promoted before insert
        followup.scheduled_at = eligibility.scheduled_at
        followup.transition_to(FollowUpStatus.SCHEDULED)
        return followup

    # ── Lookups ──────────────────────────────────────────────────

    def _key_query(self, db: Session, entity, follow_up_type: FollowUpType):
        return db.query(FollowUp).filter(
            FollowUp.entity_type == EntityType(entity.entity_type).value,
            FollowUp.entity_id == entity.id,
            FollowUp.follow_up_type == FollowUpType(follow_up_type).value,
        )

    def _active_followup(self, db: Session, entity, follow_up_type: FollowUpType) -> Optional[FollowUp]:
        return self._key_query(db, entity, follow_up_type).filter(
            FollowUp.status.in_(ACTIVE_STATUSES)
        ).first()

    def _blocking_followup(self, db: Session, entity, follow_up_type: FollowUpType) -> Optional[FollowUp]:
        """Row that prevents creating a new follow-up for this key, if any."""
        blocking = self._key_query(db, entity, follow_up_type).filter(
            FollowUp.status.in_(BLOCKING_STATUSES)
        ).first()
        if blocking:
            return blocking

        latest = self._key_query(db, entity, follow_up_type).order_by(
            FollowUp.created_at.desc(), FollowUp.id.desc()
        ).first()
        if (
            latest
            and latest.status == FollowUpStatus.STOPPED.value
            and latest.meta_model.stopped_reason in FINAL_STOP_REASONS
        ):
            return latest
        return None

    def _failed_backoff(self, db: Session, entity, follow_up_type: FollowUpType, rule, now: datetime) -> Optional[FollowUp]:
        """
        Failed row that holds the key back, if any. A key is retried once per
        retry_delay_days after its latest failure, and never after FAILED_RETRY_LIMIT failures.
        """
        failed = self._key_query(db, entity, follow_up_type).filter(
            FollowUp.status == FollowUpStatus.FAILED.value
        ).order_by(FollowUp.created_at.desc(), FollowUp.id.desc())
        if failed.count() >= FAILED_RETRY_LIMIT:
            return failed.first()

        latest = self._key_query(db, entity, follow_up_type).order_by(
            FollowUp.created_at.desc(), FollowUp.id.desc()
        ).first()
        if latest is None or latest.status != FollowUpStatus.FAILED.value:
            return None
        failed_at = latest.last_attempt_at or latest.created_at
        if failed_at and now < failed_at + timedelta(days=rule.retry_delay_days):
            return latest
        return None

    @staticmethod
    def _result(outcome: str, followup: FollowUp) -> dict:
        return {
            "outcome": outcome,
            "follow_up_id": followup.followup_id,
            "entity_type": followup.entity_type,
            "entity_id": followup.entity_id,
            "follow_up_type": followup.follow_up_type,
            "stage": followup.stage,
            "status": followup.status,
            "scheduled_at": followup.scheduled_at.isoformat() if followup.scheduled_at else None,
        }

    # ── Batch ────────────────────────────────────────────────────

    def dispatch_pass(
        self,
        db: Session,
        now: Optional[datetime] = None,
        request_id: Optional[str] = None,
        limit: int = BATCH_LIMIT,
    ) -> dict:
        """
        Run every candidate quote and invoice through dispatch_entity.
        One transaction per entity; a failing entity never aborts the pass.
        """
        now = now or datetime.utcnow()
        results = {"created": 0, "existing": 0, "skipped": 0, "errors": 0}

        for entity_type in EntityType:
            for entity in candidate_entities(db, entity_type, limit=limit):
                try:
                    outcome = self.dispatch_entity(db, entity, now=now, request_id=request_id)["outcome"]
                    db.commit()
                except (EntityLookupError, PersistenceError, SQLAlchemyError, InvalidTransition) as e:
                    db.rollback()
                    results["errors"] += 1
                    logger.error(f"Dispatch failed for {entity.entity_type} {entity.id}: {e}")
                    continue

                if outcome == "created":
                    results["created"] += 1
                elif outcome == "existing":
                    results["existing"] += 1
                else:
                    results["skipped"] += 1

        logger.info(f"Dispatch pass: {results}")
        return results
