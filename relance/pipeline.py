"""
Relance - Pipeline Orchestrator
One invocation = one request_id. Ties the passes together:
dispatch -> cleanup -> progression (batch), delivery on its own.
Targeted actions let the business app create or clean up follow-ups for
one entity at the moment its status changes.
"""
import logging
from datetime import datetime
from typing import Callable, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from relance.models import (
    FollowUp, FollowUpEvent, FollowUpStatus, EntityType,
    OPEN_QUOTE_STATUSES, OPEN_INVOICE_STATUSES, init_db,
)
from relance.errors import EntityLookupError, InvalidRequest
from relance.audit import gen_request_id
from relance.gateway import find_entity
from relance.rules import RuleStore
from relance.engine.dispatcher import Dispatcher
from relance.engine.lifecycle import cleanup_pass, stop_for_entity
from relance.engine.progression import progression_pass
from relance.engine.delivery import delivery_pass
from relance.engine.templates import TemplateResolver, DatabaseTemplateResolver
from relance.integrations.notification_sink import NotificationSink, get_sink
from relance.config import SCHEMA_VERSION

logger = logging.getLogger(__name__)

_OPEN_STATUSES = {
    EntityType.QUOTE: OPEN_QUOTE_STATUSES,
    EntityType.INVOICE: OPEN_INVOICE_STATUSES,
}


class FollowUpPipeline:
    """Main orchestrator for the follow-up engine."""

    def __init__(
        self,
        rule_store: Optional[RuleStore] = None,
        sink: Optional[NotificationSink] = None,
        resolver_factory: Callable[[Session], TemplateResolver] = DatabaseTemplateResolver,
    ):
        self.rule_store = rule_store or RuleStore()
        self.resolver_factory = resolver_factory
        self._sink = sink

    def initialize(self):
        """Initialize database tables."""
        init_db()
        logger.info("Relance pipeline initialized. Schema version: %s", SCHEMA_VERSION)

    @property
    def sink(self) -> NotificationSink:
        if self._sink is None:
            self._sink = get_sink()
        return self._sink

    def rules(self, db: Session) -> RuleStore:
        """Rules for this invocation: defaults plus active followup_rules rows."""
        return self.rule_store.load_overrides(db)

    # ── Batch ────────────────────────────────────────────────────

    def run_batch(self, db: Session, now: Optional[datetime] = None, request_id: Optional[str] = None) -> dict:
        """Dispatch, then cleanup, then progression. Each pass contains its own errors."""
        now = now or datetime.utcnow()
        request_id = request_id or gen_request_id()
        rules = self.rules(db)
        logger.info(f"Batch run {request_id} at {now:%Y-%m-%d %H:%M:%S}")

        dispatcher = Dispatcher(rules, self.resolver_factory)
        results = {
            "request_id": request_id,
            "dispatch": dispatcher.dispatch_pass(db, now=now, request_id=request_id),
            "cleanup": cleanup_pass(db, now=now, request_id=request_id),
            "progression": progression_pass(db, rules, now=now, request_id=request_id),
            "timestamp": now.isoformat(),
        }
        return results

    def deliver_due(self, db: Session, now: Optional[datetime] = None, request_id: Optional[str] = None) -> dict:
        """Hand every due follow-up to the notification sink."""
        now = now or datetime.utcnow()
        request_id = request_id or gen_request_id()
        results = delivery_pass(db, self.sink, self.rules(db), now=now, request_id=request_id)
        return {"request_id": request_id, "results": results, "timestamp": now.isoformat()}

    # ── Targeted create ──────────────────────────────────────────

    def create_followup_for_invoice(self, db: Session, invoice_id: str, now: Optional[datetime] = None,
                                    request_id: Optional[str] = None, actor: str = "api") -> dict:
        return self._create_targeted(db, EntityType.INVOICE, invoice_id, now, request_id, actor)

    def create_followup_for_quote(self, db: Session, quote_id: str, now: Optional[datetime] = None,
                                  request_id: Optional[str] = None, actor: str = "api") -> dict:
        return self._create_targeted(db, EntityType.QUOTE, quote_id, now, request_id, actor)

    def _create_targeted(self, db, entity_type: EntityType, entity_id: str, now, request_id, actor) -> dict:
        now = now or datetime.utcnow()
        request_id = request_id or gen_request_id()
        entity = self._require_entity(db, entity_type, entity_id)

        if entity.status.value not in _OPEN_STATUSES[entity_type]:
            raise InvalidRequest(
                f"{entity_type.value.capitalize()} {entity.number} is {entity.status.value}; "
                f"follow-ups need status {' or '.join(_OPEN_STATUSES[entity_type])}"
            )

        dispatcher = Dispatcher(self.rules(db), self.resolver_factory)
        try:
            result = dispatcher.dispatch_entity(
                db, entity, now=now, catch_up=True, source="targeted",
                actor=actor, request_id=request_id,
            )
            db.commit()
        except EntityLookupError as e:
            db.rollback()
            raise InvalidRequest(str(e)) from e
        except Exception:
            db.rollback()
            raise

        return {"ok": True, "request_id": request_id, **result}

    # ── Targeted cleanup ─────────────────────────────────────────

    def cleanup_finalized_invoice(self, db: Session, invoice_id: str, now: Optional[datetime] = None,
                                  request_id: Optional[str] = None, actor: str = "api") -> dict:
        return self._cleanup_targeted(db, EntityType.INVOICE, invoice_id, now, request_id, actor)

    def cleanup_finalized_quote(self, db: Session, quote_id: str, now: Optional[datetime] = None,
                                request_id: Optional[str] = None, actor: str = "api") -> dict:
        return self._cleanup_targeted(db, EntityType.QUOTE, quote_id, now, request_id, actor)

    def _cleanup_targeted(self, db, entity_type: EntityType, entity_id: str, now, request_id, actor) -> dict:
        now = now or datetime.utcnow()
        request_id = request_id or gen_request_id()
        entity = self._require_entity(db, entity_type, entity_id)

        final_status = entity.terminal_status(now)
        if final_status is None:
            raise InvalidRequest(
                f"{entity_type.value.capitalize()} {entity.number} is not in a finalized state "
                f"(status: {entity.status.value})"
            )

        try:
            stopped = stop_for_entity(
                db, entity_type, entity_id, final_status,
                triggered_by=actor, request_id=request_id, now=now, always_record=True,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Cleanup {entity_type.value} {entity_id} ({final_status}): {stopped} follow-up(s) stopped")
        return {
            "ok": True,
            "request_id": request_id,
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "final_status": final_status,
            "stopped": stopped,
        }

    @staticmethod
    def _require_entity(db: Session, entity_type: EntityType, entity_id: Optional[str]):
        if not entity_id:
            raise InvalidRequest(f"{entity_type.value}_id is required")
        entity = find_entity(db, entity_type, entity_id)
        if entity is None:
            raise InvalidRequest(f"{entity_type.value.capitalize()} {entity_id} not found")
        return entity

    # ── Stats ────────────────────────────────────────────────────

    def get_stats(self, db: Session, now: Optional[datetime] = None) -> dict:
        """Follow-up statistics."""
        now = now or datetime.utcnow()
        by_status = dict(
            db.query(FollowUp.status, func.count(FollowUp.id)).group_by(FollowUp.status).all()
        )
        by_type = dict(
            db.query(FollowUp.follow_up_type, func.count(FollowUp.id)).group_by(FollowUp.follow_up_type).all()
        )
        stats = {"total_followups": sum(by_status.values())}
        for status in FollowUpStatus:
            stats[status.value] = by_status.get(status.value, 0)
        stats["due_now"] = db.query(FollowUp).filter(
            FollowUp.status == FollowUpStatus.SCHEDULED.value,
            FollowUp.scheduled_at <= now,
        ).count()
        stats["by_type"] = by_type
        stats["total_events"] = db.query(FollowUpEvent).count()
        return stats
