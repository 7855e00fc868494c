"""
Relance - HTTP API
Trigger endpoint for the scheduler / business app, delivery endpoint,
and read-only views of follow-ups and their event trail.
"""
import json
import logging
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from relance.models import FollowUp, FollowUpEvent, TriggerRequest, get_db
from relance.errors import InvalidRequest
from relance.pipeline import FollowUpPipeline
from relance.config import SCHEMA_VERSION

logger = logging.getLogger(__name__)

app = FastAPI(title="Relance", version="1.0.0")
pipeline = FollowUpPipeline()

# action -> (id field on the request body, pipeline method name)
TRIGGER_ACTIONS = {
    "create_followup_for_invoice": ("invoice_id", "create_followup_for_invoice"),
    "create_followup_for_quote": ("quote_id", "create_followup_for_quote"),
    "cleanup_finalized_invoice": ("invoice_id", "cleanup_finalized_invoice"),
    "cleanup_finalized_quote": ("quote_id", "cleanup_finalized_quote"),
}


@app.on_event("startup")
def startup():
    pipeline.initialize()
    logger.info("Relance API started. Schema: %s", SCHEMA_VERSION)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _followup_dict(fu: FollowUp) -> dict:
    return {
        "follow_up_id": fu.followup_id,
        "entity_type": fu.entity_type,
        "entity_id": fu.entity_id,
        "follow_up_type": fu.follow_up_type,
        "stage": fu.stage,
        "status": fu.status,
        "scheduled_at": fu.scheduled_at.isoformat() if fu.scheduled_at else None,
        "attempts": fu.attempts,
        "max_attempts": fu.max_attempts,
        "template_id": fu.template_id,
        "subject": fu.subject,
        "last_error": fu.last_error,
        "meta": fu.meta or {},
        "created_at": str(fu.created_at),
        "updated_at": str(fu.updated_at),
    }


# ── Health ───────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {"status": "healthy", "schema_version": SCHEMA_VERSION, "sink": pipeline.sink.name}


# ── Trigger ──────────────────────────────────────────────────────

@app.post("/api/followups/trigger")
async def trigger(request: Request, db: Session = Depends(get_db)):
    """
    Empty body or {} runs the batch. Otherwise:
      {"action": "create_followup_for_invoice", "invoice_id": "..."}
      {"action": "create_followup_for_quote", "quote_id": "..."}
      {"action": "cleanup_finalized_invoice", "invoice_id": "..."}
      {"action": "cleanup_finalized_quote", "quote_id": "..."}
    """
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw.strip() else {}
        req = TriggerRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        return _error(400, f"Invalid request body: {e}")

    if req.action and req.action not in TRIGGER_ACTIONS:
        return _error(400, f"Unknown action: {req.action}")

    try:
        if not req.action:
            # Passes are blocking DB work; keep them off the event loop
            results = await run_in_threadpool(pipeline.run_batch, db)
            return {"ok": True, "results": results}

        id_field, method = TRIGGER_ACTIONS[req.action]
        return await run_in_threadpool(getattr(pipeline, method), db, getattr(req, id_field))
    except InvalidRequest as e:
        logger.info(f"Rejected {req.action}: {e}")
        return _error(400, str(e))
    except Exception as e:
        logger.error(f"Trigger failed ({req.action or 'batch'}): {e}", exc_info=True)
        return _error(500, str(e) or "Unknown error")


@app.post("/api/followups/deliver")
def deliver(db: Session = Depends(get_db)):
    try:
        return {"ok": True, **pipeline.deliver_due(db)}
    except Exception as e:
        logger.error(f"Delivery failed: {e}", exc_info=True)
        return _error(500, str(e) or "Unknown error")


# ── Follow-ups ───────────────────────────────────────────────────

@app.get("/api/followups")
def list_followups(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    q = db.query(FollowUp)
    if entity_type:
        q = q.filter(FollowUp.entity_type == entity_type)
    if entity_id:
        q = q.filter(FollowUp.entity_id == entity_id)
    if status:
        q = q.filter(FollowUp.status == status)
    followups = q.order_by(FollowUp.created_at.desc(), FollowUp.id.desc()).limit(limit).all()
    return [_followup_dict(fu) for fu in followups]


@app.get("/api/followups/{follow_up_id}")
def get_followup(follow_up_id: str, db: Session = Depends(get_db)):
    fu = db.query(FollowUp).filter(FollowUp.followup_id == follow_up_id).first()
    if not fu:
        raise HTTPException(404, "Follow-up not found")
    data = _followup_dict(fu)
    data["text_content"] = fu.text_content
    data["html_content"] = fu.html_content
    return data


# ── Events ───────────────────────────────────────────────────────

@app.get("/api/events")
def list_events(
    entity_id: Optional[str] = None,
    event: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    q = db.query(FollowUpEvent)
    if entity_id:
        q = q.filter(FollowUpEvent.entity_id == entity_id)
    if event:
        q = q.filter(FollowUpEvent.event == event)
    events = q.order_by(FollowUpEvent.created_at.desc(), FollowUpEvent.id.desc()).limit(limit).all()
    return [{"event": e.event, "entity_type": e.entity_type, "entity_id": e.entity_id,
             "follow_up_id": e.follow_up_id, "actor": e.actor, "request_id": e.request_id,
             "payload": e.payload, "created_at": str(e.created_at)} for e in events]


# ── Stats ────────────────────────────────────────────────────────

@app.get("/api/stats")
def get_stats(db: Session = Depends(get_db)):
    return pipeline.get_stats(db)
