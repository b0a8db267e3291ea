from .base import Base, Column, String, Integer, DateTime, Text


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id = Column(String(255), primary_key=True)
    kind = Column(String(64), index=True, nullable=False)
    recipient = Column(String(255), nullable=False, default="")
    payload = Column(Text, nullable=True)
    status = Column(String(20), index=True, nullable=False, default="pending")  # pending/sent/dead
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)
    sent_at = Column(DateTime, nullable=True)
