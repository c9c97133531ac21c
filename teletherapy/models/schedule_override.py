"""Schedule override model definitions."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, String
from teletherapy.database import Base, generate_id


class ScheduleOverride(Base):
    """A date-specific exception: day off, time off, or custom hours."""
    __tablename__ = "schedule_overrides"

    id = Column(String, primary_key=True, default=generate_id)
    therapist_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    type = Column(String, nullable=False)  # day_off/time_off/custom_hours
    reason = Column(String, default="")
    affected_slots = Column(JSON, default=list)
    is_recurring = Column(Boolean, default=False)
    recurring_until = Column(Date)
    notes = Column(String)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
