from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text, Time
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, utcnow

ACTIVE_APPOINTMENT_STATUSES = {"scheduled", "confirmed"}


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    quote_id = Column(Integer, ForeignKey("quotes.id", ondelete="CASCADE"), unique=True, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False)
    client_id = Column(String(64), index=True, nullable=False)
    professional_id = Column(String(64), index=True, nullable=False)

    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, default=60, nullable=False)
    location = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    status = Column(String(20), default="scheduled", nullable=False)  # scheduled / confirmed / cancelled / completed
    client_confirmed = Column(Boolean, default=False, nullable=False)
    professional_confirmed = Column(Boolean, default=True, nullable=False)
    # lembretes enviados pelo job de manutenção
    reminder_24h_sent = Column(Boolean, default=False, nullable=False)
    reminder_1h_sent = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    quote = relationship("Quote", back_populates="appointment")
