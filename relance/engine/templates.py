"""
Relance - Template Resolver
Resolves a template identifier to subject/text/html and fills {placeholder}
tokens. The template store is external; the engine only owns the fallback
policy: a missing template never blocks a follow-up, the built-in generic
message for the domain is used instead.
"""
import re
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from pydantic import BaseModel
from sqlalchemy.orm import Session
from relance.models import EmailTemplate, EntityType, Client
from relance.errors import TemplateMissing
from relance.engine.eligibility import calendar_days_between
from relance.config import (
    GENERIC_TEMPLATES, DEFAULT_TEMPLATE_LANGUAGE, DEFAULT_CLIENT_NAME,
    DEFAULT_QUOTE_TITLE, SITE_URL,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class TemplateContent(BaseModel):
    subject: str
    text: str = ""
    html: str = ""


class RenderedMessage(BaseModel):
    """Template content with placeholders filled in."""
    template_id: Optional[str] = None
    subject: str
    text: str = ""
    html: str = ""
    fallback: bool = False


def render(template: Optional[str], variables: dict) -> str:
    """
    Replace every {name} token with variables[name].
    Unknown placeholders are left untouched.
    """
    if not template:
        return ""

    def _sub(match):
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def normalize_language(language: Optional[str]) -> str:
    """'en-GB' -> 'en'; empty -> default language."""
    return (language or DEFAULT_TEMPLATE_LANGUAGE).split("-")[0].lower() or DEFAULT_TEMPLATE_LANGUAGE


def invoice_link(invoice_id: str) -> str:
    return f"{SITE_URL}/invoice/{invoice_id}"


def build_variables(entity, client: Optional[Client], now: datetime) -> dict:
    """Template variables for a tracked entity."""
    client_name = (client.name if client else None) or DEFAULT_CLIENT_NAME
    if entity.entity_type == EntityType.QUOTE.value:
        return {
            "quote_number": entity.number,
            "quote_title": entity.title or DEFAULT_QUOTE_TITLE,
            "client_name": client_name,
        }

    variables = {
        "invoice_number": entity.number,
        "client_name": client_name,
        "invoice_amount": f"{entity.amount:g}" if entity.amount is not None else "0",
        "invoice_link": invoice_link(entity.id),
    }
    if entity.due_date:
        days_until_due = calendar_days_between(now, entity.due_date)
        variables.update(
            due_date=entity.due_date.strftime("%d/%m/%Y"),
            days_until_due=max(days_until_due, 0),
            days_overdue=max(-days_until_due, 0),
        )
    return variables


class TemplateResolver(ABC):
    """Template store interface."""

    @abstractmethod
    def resolve(self, template_id: str, language: Optional[str] = None) -> TemplateContent:
        """Return template content. Raises TemplateMissing."""
        ...


class DatabaseTemplateResolver(TemplateResolver):
    """
    Reads email_templates. Language lookup order:
    client language, default language, then any active template of the type.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, template_id: str, language: Optional[str] = None) -> TemplateContent:
        language = normalize_language(language)
        candidates = [language]
        if language != DEFAULT_TEMPLATE_LANGUAGE:
            candidates.append(DEFAULT_TEMPLATE_LANGUAGE)

        template = None
        for lang in candidates:
            template = self._query(template_id).filter(EmailTemplate.language == lang).first()
            if template:
                break
        if not template:
            template = self._query(template_id).order_by(EmailTemplate.id.asc()).first()
        if not template:
            raise TemplateMissing(template_id, language)

        return TemplateContent(
            subject=template.subject,
            text=template.text_content or "",
            html=template.html_content or "",
        )

    def _query(self, template_id: str):
        return self.db.query(EmailTemplate).filter(
            EmailTemplate.template_type == template_id,
            EmailTemplate.is_active == True,
        )


def generic_template(entity_type: EntityType) -> TemplateContent:
    generic = GENERIC_TEMPLATES[EntityType(entity_type).value]
    return TemplateContent(subject=generic["subject"], text=generic["text"], html=generic["html"])


def resolve_message(
    resolver: TemplateResolver,
    template_id: Optional[str],
    entity_type: EntityType,
    variables: dict,
    language: Optional[str] = None,
) -> RenderedMessage:
    """Resolve + render, falling back to the generic domain message."""
    fallback = False
    try:
        if not template_id:
            raise TemplateMissing("<unset>", language)
        content = resolver.resolve(template_id, language)
    except TemplateMissing as e:
        logger.warning(f"{e}. Using generic {EntityType(entity_type).value} message.")
        content = generic_template(entity_type)
        fallback = True

    return RenderedMessage(
        template_id=template_id,
        subject=render(content.subject, variables),
        text=render(content.text, variables),
        html=render(content.html, variables),
        fallback=fallback,
    )
