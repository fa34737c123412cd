"""Import all models here for Alembic autogenerate."""

from ticket_triggers.db.base_class import Base
from ticket_triggers.models import firing, notification, trigger  # noqa: F401

__all__ = ["Base"]
