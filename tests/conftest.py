"""
Shared fixtures for the follow-up engine test suite.

Every test gets a fresh in-memory SQLite schema, a fixed clock and
factories for clients, quotes and invoices.
"""
import os

# Must be set before relance.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("RESEND_API_KEY", None)

import pytest
from datetime import date, datetime, timedelta

from relance.models import (
    Base, engine, SessionLocal, Client, Quote, Invoice, EmailTemplate,
    FollowUp, FollowUpRule, EntityType,
)
from relance.rules import RuleStore, default_rules
from relance.integrations.notification_sink import SimulatedSink
from relance.pipeline import FollowUpPipeline


NOW = datetime(2026, 10, 18, 10, 0, 0)
TODAY = NOW.date()


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def now():
    return NOW


# =============================================================================
# RULES / SINK / PIPELINE
# =============================================================================

@pytest.fixture
def rule_store():
    return RuleStore()


@pytest.fixture
def quote_rule():
    return default_rules()[EntityType.QUOTE]


@pytest.fixture
def invoice_rule():
    return default_rules()[EntityType.INVOICE]


@pytest.fixture
def sink():
    return SimulatedSink()


@pytest.fixture
def pipeline(rule_store, sink):
    return FollowUpPipeline(rule_store=rule_store, sink=sink)


def make_rule(**overrides) -> FollowUpRule:
    """Invoice-style rule with overrides."""
    values = {
        "max_stages": 3,
        "stage_delays": [0, 1, 3, 7],
        "max_attempts_per_stage": 3,
        "approaching_deadline_days": 3,
        "instant_view_followup": True,
    }
    values.update(overrides)
    return FollowUpRule(**values)


# =============================================================================
# ENTITY FACTORIES
# =============================================================================

@pytest.fixture
def make_client(db):
    def _make(name="Jeanne Dupont", email="jeanne@example.com", language="fr"):
        client = Client(name=name, email=email, language_preference=language)
        db.add(client)
        db.commit()
        return client
    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def make_quote(db, client):
    counter = {"n": 0}

    def _make(status="sent", sent_at=None, valid_until=None, title="Rénovation cuisine", client_id=None):
        counter["n"] += 1
        quote = Quote(
            client_id=client_id or client.id,
            quote_number=f"DEV-2026-{counter['n']:03d}",
            title=title,
            status=status,
            sent_at=sent_at,
            valid_until=valid_until,
            created_at=NOW - timedelta(days=10),
        )
        db.add(quote)
        db.commit()
        return quote
    return _make


@pytest.fixture
def make_invoice(db, client):
    counter = {"n": 0}

    def _make(status="unpaid", due_date=None, amount=1250.0, client_id=None):
        counter["n"] += 1
        invoice = Invoice(
            client_id=client_id or client.id,
            invoice_number=f"FAC-2026-{counter['n']:03d}",
            title="Travaux",
            status=status,
            issue_date=TODAY - timedelta(days=30),
            due_date=due_date if due_date is not None else TODAY,
            final_amount=amount,
            created_at=NOW - timedelta(days=30),
        )
        db.add(invoice)
        db.commit()
        return invoice
    return _make


@pytest.fixture
def make_template(db):
    def _make(template_type, language="fr", subject="Sujet {quote_number}",
              text="Bonjour {client_name}", html="<p>Bonjour {client_name}</p>", is_active=True):
        template = EmailTemplate(
            template_type=template_type, language=language, subject=subject,
            text_content=text, html_content=html, is_active=is_active,
        )
        db.add(template)
        db.commit()
        return template
    return _make


def followups_for(db, entity_id, follow_up_type=None):
    q = db.query(FollowUp).filter(FollowUp.entity_id == entity_id)
    if follow_up_type:
        q = q.filter(FollowUp.follow_up_type == follow_up_type)
    return q.order_by(FollowUp.id.asc()).all()
