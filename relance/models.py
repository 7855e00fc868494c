"""
Relance - Data Models
Follow-up state owned by the engine, plus read-only views of the business
tables (clients, quotes, invoices) the engine evaluates.

Tables:
  clients, quotes, invoices            (owned by the business app)
  follow_ups, followup_events          (owned by the engine)
  email_templates, followup_rules      (configuration, read-only at run time)
"""
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from sqlalchemy import (
    create_engine, event, Column, Integer, String, Text, Float,
    Boolean, Date, DateTime, ForeignKey, JSON, UniqueConstraint,
    Index, text,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from pydantic import BaseModel, ConfigDict, Field, model_validator
from relance.config import DATABASE_URL
from relance.errors import InvalidTransition

# ── SQLAlchemy Setup ──────────────────────────────────────────────

Base = declarative_base()

_engine_kwargs = {"echo": False, "pool_pre_ping": True}
if DATABASE_URL.startswith("sqlite"):
    # One shared connection so in-memory databases survive across sessions
    _engine_kwargs.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)

engine = create_engine(DATABASE_URL, **_engine_kwargs)

if DATABASE_URL.startswith("sqlite"):
    # pysqlite defers BEGIN, which breaks SAVEPOINT. Take over transaction control.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

SessionLocal = sessionmaker(bind=engine)


def gen_uuid():
    return str(uuid.uuid4())


# ── Enums ─────────────────────────────────────────────────────────

class EntityType(str, Enum):
    QUOTE = "quote"
    INVOICE = "invoice"


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


class FollowUpType(str, Enum):
    NOT_VIEWED = "not_viewed"                      # Quote sent, never opened
    VIEWED_INSTANT = "viewed_instant"              # Quote opened, no decision
    APPROACHING_DEADLINE = "approaching_deadline"  # Invoice due soon
    OVERDUE = "overdue"                            # Invoice past due


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"                                  # Stage attempts exhausted, awaiting progression
    ALL_STAGES_COMPLETED = "all_stages_completed"
    STOPPED = "stopped"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


ACTIVE_STATUSES = (FollowUpStatus.PENDING.value, FollowUpStatus.SCHEDULED.value)

# A key in one of these states blocks the Dispatcher from creating a new row
BLOCKING_STATUSES = ACTIVE_STATUSES + (
    FollowUpStatus.SENT.value,
    FollowUpStatus.ALL_STAGES_COMPLETED.value,
)

TERMINAL_FOLLOWUP_STATUSES = (
    FollowUpStatus.ALL_STAGES_COMPLETED.value,
    FollowUpStatus.STOPPED.value,
    FollowUpStatus.FAILED.value,
)

ALLOWED_TRANSITIONS = {
    FollowUpStatus.PENDING: (
        FollowUpStatus.SCHEDULED, FollowUpStatus.STOPPED,
    ),
    FollowUpStatus.SCHEDULED: (
        FollowUpStatus.SCHEDULED, FollowUpStatus.SENT,
        FollowUpStatus.STOPPED, FollowUpStatus.FAILED,
    ),
    FollowUpStatus.SENT: (
        FollowUpStatus.SCHEDULED, FollowUpStatus.ALL_STAGES_COMPLETED,
        FollowUpStatus.STOPPED, FollowUpStatus.FAILED,
    ),
}

OPEN_QUOTE_STATUSES = (QuoteStatus.SENT.value, QuoteStatus.VIEWED.value)
TERMINAL_QUOTE_STATUSES = (
    QuoteStatus.ACCEPTED.value,
    QuoteStatus.REJECTED.value,
    QuoteStatus.EXPIRED.value,
)
OPEN_INVOICE_STATUSES = (InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value)
TERMINAL_INVOICE_STATUSES = (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value)


# ── Business Tables (read-only to the engine) ─────────────────────

class Client(Base):
    """Client record. Owned by the business app."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    created_at = Column(DateTime, default=datetime.utcnow)
    name = Column(String(300))
    email = Column(String(300))
    language_preference = Column(String(10))         # "fr", "en-GB", ...


class Quote(Base):
    """Quote (devis). Status is driven by the business app."""
    __tablename__ = "quotes"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    client_id = Column(String(36), ForeignKey("clients.id"), index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    quote_number = Column(String(100), nullable=False)
    title = Column(String(500))
    status = Column(String(50), default=QuoteStatus.DRAFT.value, index=True)
    sent_at = Column(DateTime)
    valid_until = Column(DateTime)

    client = relationship("Client")


class Invoice(Base):
    """Invoice (facture). Status is driven by the business app."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    client_id = Column(String(36), ForeignKey("clients.id"), index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    invoice_number = Column(String(100), nullable=False)
    title = Column(String(500))
    status = Column(String(50), default=InvoiceStatus.UNPAID.value, index=True)
    issue_date = Column(Date)
    due_date = Column(Date, index=True)
    final_amount = Column(Float)

    client = relationship("Client")


# ── Engine Tables ─────────────────────────────────────────────────

class FollowUp(Base):
    """
    One reminder track for (entity, follow_up_type).
    At most one row per key may be pending/scheduled at any time.
    """
    __tablename__ = "follow_ups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    followup_id = Column(String(36), default=gen_uuid, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    entity_type = Column(String(20), nullable=False)      # quote, invoice
    entity_id = Column(String(36), nullable=False)
    client_id = Column(String(36))
    follow_up_type = Column(String(50), nullable=False)

    # State
    stage = Column(Integer, nullable=False, default=1)
    status = Column(String(50), nullable=False, default=FollowUpStatus.PENDING.value)
    scheduled_at = Column(DateTime)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text)
    last_attempt_at = Column(DateTime)

    # Content, resolved once at creation for audit
    template_id = Column(String(100))
    subject = Column(String(500))
    text_content = Column(Text)
    html_content = Column(Text)

    meta = Column(JSON, default=dict)

    __table_args__ = (
        Index(
            "uq_follow_ups_active_key",
            "entity_type", "entity_id", "follow_up_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'scheduled')"),
            sqlite_where=text("status IN ('pending', 'scheduled')"),
        ),
        Index("ix_follow_ups_entity", "entity_type", "entity_id"),
        Index("ix_follow_ups_status_scheduled", "status", "scheduled_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def transition_to(self, status: "FollowUpStatus") -> None:
        """Move to a new status, enforcing the follow-up state machine."""
        status = FollowUpStatus(status)
        allowed = ALLOWED_TRANSITIONS.get(FollowUpStatus(self.status), ())
        if status not in allowed:
            raise InvalidTransition(
                f"follow-up {self.followup_id}: {self.status} -> {status.value} not allowed"
            )
        self.status = status.value

    @property
    def meta_model(self) -> "FollowUpMeta":
        return FollowUpMeta(**(self.meta or {}))

    def update_meta(self, **changes) -> None:
        """Merge changes into meta. Reassigns so the JSON column is flagged dirty."""
        merged = {**self.meta_model.model_dump(), **changes}
        self.meta = FollowUpMeta(**merged).to_json()


class FollowUpEvent(Base):
    """Lifecycle event trail for follow-ups (created, sent, stopped, ...)."""
    __tablename__ = "followup_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    request_id = Column(String(36), index=True)      # Trace one invocation
    event = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(20), index=True)
    entity_id = Column(String(36), index=True)
    follow_up_id = Column(String(36))
    actor = Column(String(100))                      # scheduler, api, worker, system
    payload = Column(JSON)


class EmailTemplate(Base):
    """Template store. Looked up by template_type + language."""
    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_type = Column(String(100), nullable=False, index=True)
    language = Column(String(10), nullable=False, default="fr")
    subject = Column(String(500), nullable=False)
    text_content = Column(Text)
    html_content = Column(Text)
    is_active = Column(Boolean, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("template_type", "language", name="uq_email_templates_type_language"),
    )


class FollowUpRuleRow(Base):
    """Per-domain rule overrides. Missing row = built-in defaults."""
    __tablename__ = "followup_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(20), unique=True, nullable=False)
    is_active = Column(Boolean, default=True)
    max_stages = Column(Integer, nullable=False)
    stage_delays = Column(JSON, nullable=False)          # [0, 1, 3, 7]
    max_attempts_per_stage = Column(Integer, nullable=False)
    max_attempts_by_type = Column(JSON, default=dict)
    approaching_deadline_days = Column(Integer, default=0)
    instant_view_followup = Column(Boolean, default=False)
    retry_delay_days = Column(Integer, default=1)
    template_id_by_type = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ── Pydantic Schemas ──────────────────────────────────────────────

class FollowUpRule(BaseModel):
    """Validated follow-up configuration for one domain."""
    max_stages: int = Field(ge=1)
    stage_delays: list[int]
    max_attempts_per_stage: int = Field(ge=1)
    max_attempts_by_type: dict[FollowUpType, int] = Field(default_factory=dict)
    approaching_deadline_days: int = Field(default=0, ge=0)
    instant_view_followup: bool = False
    retry_delay_days: int = Field(default=1, ge=0)
    template_id_by_type: dict[FollowUpType, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_stage_delays(self):
        # Index 0 is the original send, so stages 1..max_stages need their own slot
        if len(self.stage_delays) <= self.max_stages:
            raise ValueError(
                f"stage_delays needs {self.max_stages + 1} entries "
                f"(index 0 + one per stage), got {len(self.stage_delays)}"
            )
        if any(d < 0 for d in self.stage_delays):
            raise ValueError("stage_delays must be non-negative")
        return self

    def delay_for(self, stage: int) -> int:
        return self.stage_delays[stage]

    def max_attempts_for(self, follow_up_type: FollowUpType) -> int:
        return self.max_attempts_by_type.get(follow_up_type, self.max_attempts_per_stage)


class FollowUpMeta(BaseModel):
    """Diagnostic attributes stored in follow_ups.meta. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")

    priority: Priority = Priority.MEDIUM
    automated: bool = True
    source: Optional[str] = None                     # batch, targeted, ...
    template_fallback: bool = False
    days_overdue: Optional[int] = None
    days_until_due: Optional[int] = None
    stage_progressed: bool = False
    previous_stage: Optional[int] = None
    completed_stage: Optional[int] = None
    progressed_at: Optional[datetime] = None
    stopped_reason: Optional[str] = None
    stopped_at: Optional[datetime] = None
    final_status: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class TrackedQuote(BaseModel):
    """Read-only snapshot of a quote, as seen by the evaluator."""
    entity_type: Literal["quote"] = "quote"
    id: str
    client_id: Optional[str] = None
    status: QuoteStatus
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    number: str
    title: Optional[str] = None

    def terminal_status(self, now: datetime) -> Optional[str]:
        """Terminal status of the quote, or None while it can still be followed up."""
        if self.status.value in TERMINAL_QUOTE_STATUSES:
            return self.status.value
        if self.valid_until and self.valid_until < now:
            return QuoteStatus.EXPIRED.value
        return None


class TrackedInvoice(BaseModel):
    """Read-only snapshot of an invoice, as seen by the evaluator."""
    entity_type: Literal["invoice"] = "invoice"
    id: str
    client_id: Optional[str] = None
    status: InvoiceStatus
    created_at: Optional[datetime] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    number: str
    title: Optional[str] = None
    amount: Optional[float] = None

    def terminal_status(self, now: datetime) -> Optional[str]:
        if self.status.value in TERMINAL_INVOICE_STATUSES:
            return self.status.value
        return None


TrackedEntity = Annotated[Union[TrackedQuote, TrackedInvoice], Field(discriminator="entity_type")]


class Eligibility(BaseModel):
    """Evaluator output for an entity that warrants a follow-up."""
    follow_up_type: FollowUpType
    stage: int = Field(ge=1)
    scheduled_at: datetime
    priority: Priority
    days_overdue: Optional[int] = None
    days_until_due: Optional[int] = None


class TriggerRequest(BaseModel):
    """Body of POST /api/followups/trigger. No action = batch run."""
    action: Optional[str] = None
    invoice_id: Optional[str] = None
    quote_id: Optional[str] = None


# ── Init Database ─────────────────────────────────────────────────

def init_db():
    """Create all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Dependency for FastAPI routes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
