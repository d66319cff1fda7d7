from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String

from marketplace.core.database import Base, utcnow


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), index=True, nullable=False)
    # um crédito por orçamento
    quote_id = Column(Integer, ForeignKey("quotes.id", ondelete="SET NULL"), unique=True, nullable=True)

    type = Column(String(10), nullable=False)  # credit / debit
    amount = Column(Numeric(10, 2), nullable=False)
    fee = Column(Numeric(10, 2), default=0, nullable=False)
    net_amount = Column(Numeric(10, 2), nullable=False)
    description = Column(String(255), nullable=True)
    customer_name = Column(String(120), nullable=True)
    status = Column(String(20), default="completed", nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
