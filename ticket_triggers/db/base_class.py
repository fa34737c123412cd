"""SQLAlchemy declarative base shared by the engine's tables."""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, declared_attr

JSON_COMPATIBLE = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Declarative base that derives snake-ish table names from class names."""
    @declared_attr.directive
    def __tablename__(cls) -> str:  # type: ignore[misc]
        return f"{cls.__name__.lower()}s"
