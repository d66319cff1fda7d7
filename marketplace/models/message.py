from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from marketplace.core.database import Base, utcnow

MESSAGE_TYPES = {"text", "image", "file"}


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "client_message_id", name="uq_message_client_id"),
    )

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False)
    sender_id = Column(String(64), index=True, nullable=False)

    content = Column(Text, default="", nullable=False)
    message_type = Column(String(10), default="text", nullable=False)  # text / image / file
    file_url = Column(Text, nullable=True)
    file_name = Column(String(255), nullable=True)

    # referência fraca: o alvo pode ser apagado depois
    reply_to_id = Column(Integer, nullable=True)
    # chave de idempotência gerada pelo cliente para reenvios
    client_message_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    read_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
