"""Runtime setting rows (key/value, grouped by category)."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from formhook.db import Base


class Setting(Base):
    """A delivery setting overriding its registered default."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    category = Column(String, nullable=False, default="general")  # delivery, retries, recovery
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<Setting(key={self.key}, value={self.value})>"
