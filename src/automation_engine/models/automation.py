"""Automation model holding the enabled flag checked before each step dispatch."""
from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func
from automation_engine.models.flow_execution import Base


class Automation(Base):
    """An automation owned by a user and bound to a chat thread."""

    __tablename__ = "automations"

    id = Column(String(100), primary_key=True, index=True)
    thread_id = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Automation(id='{self.id}', enabled={self.enabled}, user_id='{self.user_id}')>"
