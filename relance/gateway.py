"""
Relance - Tracked Entity Gateway
Read access to quotes, invoices and clients. Rows are converted into
TrackedQuote / TrackedInvoice snapshots so the engine never holds (or
mutates) business-owned ORM objects.
"""
import logging
from typing import Optional
from sqlalchemy.orm import Session
from relance.models import (
    Client, Quote, Invoice, EntityType, TrackedQuote, TrackedInvoice,
    OPEN_QUOTE_STATUSES, OPEN_INVOICE_STATUSES,
)
from relance.errors import EntityLookupError
from relance.config import BATCH_LIMIT

logger = logging.getLogger(__name__)

_MODELS = {
    EntityType.QUOTE: Quote,
    EntityType.INVOICE: Invoice,
}

_OPEN_STATUSES = {
    EntityType.QUOTE: OPEN_QUOTE_STATUSES,
    EntityType.INVOICE: OPEN_INVOICE_STATUSES,
}


def to_tracked(row):
    """Snapshot a Quote or Invoice row."""
    if isinstance(row, Quote):
        return TrackedQuote(
            id=row.id, client_id=row.client_id, status=row.status,
            created_at=row.created_at, sent_at=row.sent_at,
            valid_until=row.valid_until, number=row.quote_number, title=row.title,
        )
    if isinstance(row, Invoice):
        return TrackedInvoice(
            id=row.id, client_id=row.client_id, status=row.status,
            created_at=row.created_at, issue_date=row.issue_date,
            due_date=row.due_date, number=row.invoice_number, title=row.title,
            amount=row.final_amount,
        )
    raise TypeError(f"Not a tracked entity: {type(row).__name__}")


def get_entity(db: Session, entity_type: EntityType, entity_id: str):
    """Load one entity snapshot. Raises EntityLookupError if missing."""
    model = _MODELS[EntityType(entity_type)]
    row = db.query(model).filter(model.id == entity_id).first()
    if not row:
        raise EntityLookupError(f"{EntityType(entity_type).value} {entity_id} not found")
    return to_tracked(row)


def find_entity(db: Session, entity_type: EntityType, entity_id: str):
    """Like get_entity, but returns None when missing."""
    try:
        return get_entity(db, entity_type, entity_id)
    except EntityLookupError:
        return None


def get_client(db: Session, client_id: Optional[str]) -> Client:
    """Load the client of an entity. Raises EntityLookupError if missing."""
    client = db.query(Client).filter(Client.id == client_id).first() if client_id else None
    if not client:
        raise EntityLookupError(f"client {client_id} not found")
    return client


def candidate_entities(db: Session, entity_type: EntityType, limit: int = BATCH_LIMIT) -> list:
    """
    Coarse pre-filter for the Dispatcher: quotes sent/viewed, invoices
    unpaid/overdue. The evaluator makes the real decision.
    """
    entity_type = EntityType(entity_type)
    model = _MODELS[entity_type]
    rows = db.query(model).filter(
        model.status.in_(_OPEN_STATUSES[entity_type])
    ).order_by(model.created_at.asc()).limit(limit).all()
    logger.debug(f"{len(rows)} candidate {entity_type.value}s")
    return [to_tracked(row) for row in rows]
