from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, utcnow

PAYMENT_STATUSES = {"PENDING", "PAID", "EXPIRED"}


class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    id = Column(Integer, primary_key=True)
    quote_id = Column(Integer, ForeignKey("quotes.id", ondelete="CASCADE"), index=True, nullable=False)

    pix_id = Column(String(120), unique=True, nullable=False)
    br_code = Column(Text, nullable=False)
    br_code_base64 = Column(Text, nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    expires_at = Column(DateTime, nullable=False)

    status = Column(String(10), default="PENDING", index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)

    quote = relationship("Quote", back_populates="payment_sessions")
