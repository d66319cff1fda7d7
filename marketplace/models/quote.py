from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, utcnow

QUOTE_STATUSES = {"pending", "accepted", "rejected", "cancelled", "expired"}


class Quote(Base):
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False)
    service_id = Column(String(64), nullable=True)
    professional_id = Column(String(64), index=True, nullable=False)
    client_id = Column(String(64), index=True, nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    validity_days = Column(Integer, default=7, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    status = Column(String(20), default="pending", index=True, nullable=False)
    response_text = Column(Text, nullable=True)
    responded_at = Column(DateTime, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    client_confirmed = Column(Boolean, default=False, nullable=False)
    client_confirmed_at = Column(DateTime, nullable=True)
    pix_id = Column(String(120), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="quotes")
    appointment = relationship("Appointment", back_populates="quote", uselist=False, lazy="raise")
    payment_sessions = relationship("PaymentSession", back_populates="quote", lazy="raise")

    @property
    def stage(self) -> str:
        if self.status != "accepted":
            return self.status
        if self.client_confirmed:
            return "confirmed"
        if self.completed_at is not None:
            return "awaiting_confirmation"
        return "accepted"

    @property
    def is_terminal(self) -> bool:
        return self.stage in {"rejected", "cancelled", "expired", "confirmed"}
