"""Repository for message logs and WhatsApp configuration."""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func

from ..models import CommunicationLog, WhatsAppConfig, WhatsAppTemplate, User


class CommunicationRepository:
    """Data access for messaging tables."""

    def __init__(self, db):
        self.db = db

    def add_log(self, log: CommunicationLog) -> CommunicationLog:
        self.db.add(log)
        self.db.flush()
        return log

    def list_logs(
        self,
        company_id: Optional[str],
        channel: Optional[str] = None,
        sentiment: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        direction: Optional[str] = None,
    ) -> List[CommunicationLog]:
        query = self.db.query(CommunicationLog).filter(CommunicationLog.company_id == company_id)
        if direction:
            query = query.filter(CommunicationLog.direction == direction)
        if channel:
            query = query.filter(CommunicationLog.channel == channel)
        if sentiment:
            query = query.filter(CommunicationLog.sentiment_label == sentiment)
        if since is not None:
            query = query.filter(CommunicationLog.sent_at >= since)
        return (
            query.order_by(CommunicationLog.sent_at.desc(), CommunicationLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def sentiment_breakdown(self, company_id: Optional[str]) -> List[Tuple[str, Optional[str], int, Optional[float]]]:
        """Rows of (channel, label, count, average score) for inbound messages."""
        query = self.db.query(
            CommunicationLog.channel,
            CommunicationLog.sentiment_label,
            func.count(CommunicationLog.id),
            func.avg(CommunicationLog.sentiment_score),
        ).filter(CommunicationLog.direction == "inbound", CommunicationLog.company_id == company_id)
        return query.group_by(CommunicationLog.channel, CommunicationLog.sentiment_label).all()

    # -- Users by messaging identity ------------------------------------------

    def user_by_telegram_id(self, telegram_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.telegram_id == telegram_id).first()

    def user_by_whatsapp_number(self, number: str) -> Optional[User]:
        return self.db.query(User).filter(User.whatsapp_number == number).first()

    # -- WhatsApp Business -----------------------------------------------------

    def active_config_by_verify_token(self, token: str) -> Optional[WhatsAppConfig]:
        return (
            self.db.query(WhatsAppConfig)
            .filter(WhatsAppConfig.webhook_verify_token == token, WhatsAppConfig.is_active.is_(True))
            .first()
        )

    def active_config_by_phone_number_id(self, phone_number_id: str) -> Optional[WhatsAppConfig]:
        return (
            self.db.query(WhatsAppConfig)
            .filter(WhatsAppConfig.phone_number_id == phone_number_id, WhatsAppConfig.is_active.is_(True))
            .first()
        )

    def config_by_phone_number_id(self, phone_number_id: str) -> Optional[WhatsAppConfig]:
        return (
            self.db.query(WhatsAppConfig)
            .filter(WhatsAppConfig.phone_number_id == phone_number_id)
            .first()
        )

    def increment_counter(self, config_id: str, direction: str) -> None:
        column = (
            WhatsAppConfig.messages_received_today
            if direction == "inbound"
            else WhatsAppConfig.messages_sent_today
        )
        self.db.query(WhatsAppConfig).filter(WhatsAppConfig.id == config_id).update(
            {column: column + 1}, synchronize_session=False
        )

    def template_by_template_id(self, template_id: str) -> Optional[WhatsAppTemplate]:
        return self.db.query(WhatsAppTemplate).filter(WhatsAppTemplate.template_id == template_id).first()
