from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)

    client_id = Column(String(64), index=True, nullable=False)
    professional_id = Column(String(64), index=True, nullable=False)
    service_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    # max(created_at) das mensagens não apagadas
    last_message_at = Column(DateTime, default=utcnow, index=True, nullable=False)

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")
    quotes = relationship("Quote", back_populates="conversation", cascade="all, delete-orphan")

    def participants(self) -> tuple[str, str]:
        return (self.client_id, self.professional_id)

    def other_participant(self, user_id: str) -> str:
        return self.professional_id if user_id == self.client_id else self.client_id


# Um único par cliente/profissional por serviço; NULL conta como o mesmo serviço
Index(
    "uq_conversation_participants_service",
    Conversation.client_id,
    Conversation.professional_id,
    func.coalesce(Conversation.service_id, ""),
    unique=True,
)


class ConversationClearance(Base):
    """Marca d'água por usuário: mensagens anteriores a cleared_at ficam ocultas só para ele."""

    __tablename__ = "conversation_clearances"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id", name="uq_clearance_conversation_user"),)

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String(64), nullable=False)
    cleared_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
