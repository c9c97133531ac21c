"""Appointment model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from teletherapy.database import Base, generate_id


class Appointment(Base):
    """Represents a booked therapy session."""
    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=generate_id)
    therapist_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    time_slot_id = Column(String, ForeignKey("time_slots.id"))
    scheduled_for = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default="pending")
    session_type = Column(String, default="individual")
    payment_amount = Column(Integer, default=0)  # minor units
    payment_currency = Column(String)
    payment_status = Column(String, default="pending")
    channel_id = Column(String)
    client_notes = Column(String)
    # Cleared on cancellation so the window can be booked again.
    booking_key = Column(String, unique=True)
    cancellation_reason = Column(String)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
    confirmed_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
