"""Messaging models: inbound/outbound message log and WhatsApp Business configuration."""

from sqlalchemy import Column, String, Text, Integer, Float, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.sql import func
from ..database import Base


class CommunicationLog(Base):
    """One message received from or sent to an employee on a messaging channel.

    Sentiment columns stay NULL when analysis failed or did not apply
    (non-text messages, outbound replies).
    """

    __tablename__ = "communication_logs"
    __table_args__ = (
        Index("ix_communication_logs_company_channel", "company_id", "channel"),
        Index("ix_communication_logs_sent_at", "sent_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(String(20), nullable=False)
    direction = Column(String(10), nullable=False, default="inbound")
    external_id = Column(String(255), nullable=True)
    sender_id = Column(String(255), nullable=True)
    recipient_id = Column(String(255), nullable=True)

    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)
    company_id = Column(String(50), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    whatsapp_config_id = Column(String(50), ForeignKey("whatsapp_configs.id", ondelete="SET NULL"), nullable=True)

    message = Column(Text, nullable=True)
    message_type = Column(String(30), nullable=False, default="text")
    media_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="received")

    sentiment_score = Column(Float, nullable=True)
    sentiment_label = Column(String(20), nullable=True)
    sentiment_confidence = Column(Float, nullable=True)

    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON, nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class WhatsAppConfig(Base):
    """A company's WhatsApp Business phone number."""

    __tablename__ = "whatsapp_configs"

    id = Column(String(50), primary_key=True)
    company_id = Column(String(50), ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    company_name = Column(String(255), nullable=True)
    phone_number_id = Column(String(64), unique=True, nullable=False)
    display_phone_number = Column(String(32), nullable=True)
    business_account_id = Column(String(64), nullable=True)
    access_token = Column(Text, nullable=True)
    webhook_verify_token = Column(String(255), nullable=True)
    quality_rating = Column(String(20), nullable=True)

    auto_reply_enabled = Column(Boolean, nullable=False, default=False)
    auto_reply_message = Column(Text, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    messages_received_today = Column(Integer, nullable=False, default=0)
    messages_sent_today = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WhatsAppTemplate(Base):
    """Message template registered with Meta; status changes arrive by webhook."""

    __tablename__ = "whatsapp_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(String(64), unique=True, nullable=False)
    whatsapp_config_id = Column(String(50), ForeignKey("whatsapp_configs.id", ondelete="CASCADE"), nullable=True)
    name = Column(String(255), nullable=False)
    language = Column(String(10), nullable=False, default="es")
    status = Column(String(30), nullable=False, default="PENDING")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
