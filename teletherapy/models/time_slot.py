"""Time slot catalog model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from teletherapy.database import Base, generate_id


class TimeSlot(Base):
    """A platform-wide bookable window, e.g. 09:00-09:50."""
    __tablename__ = "time_slots"

    id = Column(String, primary_key=True, default=generate_id)
    start_time = Column(String, nullable=False)  # HH:MM
    end_time = Column(String, nullable=False)  # HH:MM
    duration_minutes = Column(Integer, nullable=False)
    display_name = Column(String)
    is_standard = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)
