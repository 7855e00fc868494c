"""
Relance - Rule Store
Holds the FollowUpRule for each domain. Built from explicit defaults at
startup; active rows in followup_rules override them. Read-only during a pass.
"""
import logging
from typing import Optional
from pydantic import ValidationError
from sqlalchemy.orm import Session
from relance.models import EntityType, FollowUpRule, FollowUpRuleRow
from relance.config import QUOTE_RULE_DEFAULTS, INVOICE_RULE_DEFAULTS

logger = logging.getLogger(__name__)


def default_rule(entity_type: EntityType) -> FollowUpRule:
    """Built-in rule for a domain."""
    if EntityType(entity_type) == EntityType.QUOTE:
        return FollowUpRule(**QUOTE_RULE_DEFAULTS)
    return FollowUpRule(**INVOICE_RULE_DEFAULTS)


def default_rules() -> dict[EntityType, FollowUpRule]:
    return {et: default_rule(et) for et in EntityType}


class RuleStore:
    """Per-domain follow-up rules. Inject custom rules in tests."""

    def __init__(self, rules: Optional[dict[EntityType, FollowUpRule]] = None):
        self._rules = dict(rules or default_rules())

    def get(self, entity_type: EntityType) -> FollowUpRule:
        return self._rules[EntityType(entity_type)]

    def load_overrides(self, db: Session) -> "RuleStore":
        """
        Return a new store with active DB rows applied on top of this one.
        Invalid rows are logged and ignored; the current rule stays.
        """
        rules = dict(self._rules)
        rows = db.query(FollowUpRuleRow).filter(FollowUpRuleRow.is_active == True).all()
        for row in rows:
            try:
                entity_type = EntityType(row.entity_type)
                rules[entity_type] = FollowUpRule(
                    max_stages=row.max_stages,
                    stage_delays=row.stage_delays,
                    max_attempts_per_stage=row.max_attempts_per_stage,
                    max_attempts_by_type=row.max_attempts_by_type or {},
                    approaching_deadline_days=row.approaching_deadline_days or 0,
                    instant_view_followup=bool(row.instant_view_followup),
                    retry_delay_days=row.retry_delay_days if row.retry_delay_days is not None else 1,
                    template_id_by_type=row.template_id_by_type or {},
                )
            except (ValueError, ValidationError) as e:
                logger.error(f"Ignoring invalid follow-up rule row {row.id} ({row.entity_type}): {e}")
        return RuleStore(rules)
