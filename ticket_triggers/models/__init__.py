"""SQLAlchemy ORM models for the trigger engine."""

from ticket_triggers.models.firing import TriggerFiring
from ticket_triggers.models.notification import OutboundMessageRecord, OutboundMessageStatus
from ticket_triggers.models.trigger import Trigger

__all__ = [
    "OutboundMessageRecord",
    "OutboundMessageStatus",
    "Trigger",
    "TriggerFiring",
]
