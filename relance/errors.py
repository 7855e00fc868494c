"""
Relance - Error Taxonomy
Per-entity errors are contained by the passes; only InvalidRequest and
malformed input reach the HTTP caller.
"""


class FollowUpError(Exception):
    """Base class for engine errors."""


class EntityLookupError(FollowUpError, LookupError):
    """Entity or client record missing. The entity is skipped."""


class TemplateMissing(FollowUpError):
    """No active template for the identifier. Caller falls back to generic text."""

    def __init__(self, template_id: str, language: str = None):
        self.template_id = template_id
        self.language = language
        super().__init__(f"Template {template_id!r} not found (language={language})")


class PersistenceError(FollowUpError):
    """A write failed. Only the current entity's transaction is rolled back."""


class ConstraintViolation(PersistenceError):
    """Uniqueness conflict on a concurrent create. The existing active row stands."""


class InvalidRequest(FollowUpError):
    """Targeted action on an entity that is missing or in the wrong status."""


class InvalidTransition(FollowUpError):
    """Follow-up state machine violation."""


class NotificationError(FollowUpError):
    """The notification sink refused or failed to accept a message."""
