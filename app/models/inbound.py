from sqlalchemy import Column, String, Integer, Text, DateTime
from sqlalchemy.sql import func
from app.database import Base


class InboundMessage(Base):
    """Inbound email delivery, unique on the provider's MessageId."""

    __tablename__ = "inbound_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(500), nullable=False, unique=True, index=True)
    sender = Column(String(500), nullable=True)
    job_posting_id = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="received")
    attachments_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
