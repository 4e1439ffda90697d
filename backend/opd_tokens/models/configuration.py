"""
Business configuration entries (category -> key -> value).
"""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from opd_tokens.db.engine import Base


class ConfigurationEntry(Base):
    """One overridden configuration value."""

    __tablename__ = "configuration"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(50), nullable=False)
    key = Column(String(100), nullable=False)
    value = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    description = Column(Text, nullable=True)
    updated_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("category", "key", name="uq_configuration_category_key"),
    )

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
