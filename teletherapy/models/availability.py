"""Availability model definitions."""

from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from teletherapy.database import Base, generate_id


class Availability(Base):
    """One weekday + slot a therapist opens as part of their standing pattern."""
    __tablename__ = "availability"
    __table_args__ = (
        UniqueConstraint("therapist_id", "day_of_week", "time_slot_id", name="uq_availability_day_slot"),
    )

    id = Column(String, primary_key=True, default=generate_id)
    therapist_id = Column(String, nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday..6=Saturday
    time_slot_id = Column(String, ForeignKey("time_slots.id"), nullable=False)
    notes = Column(String)
    created_at = Column(DateTime, default=datetime.now)


class TherapistSchedule(Base):
    """Per-therapist cadence settings and the schedule version used for booking writes."""
    __tablename__ = "therapist_schedules"

    therapist_id = Column(String, primary_key=True)
    pattern = Column(String, nullable=False, default="weekly")
    reference_date = Column(Date)
    monthly_rule = Column(String, nullable=False, default="day_of_month")
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
