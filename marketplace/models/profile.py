from sqlalchemy import Column, DateTime, Integer, String

from marketplace.core.database import Base, utcnow


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False)
    full_name = Column(String(120), nullable=True)
    email = Column(String(200), nullable=True)
    phone = Column(String(30), nullable=True)
    cpf = Column(String(11), nullable=True)  # somente dígitos

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
