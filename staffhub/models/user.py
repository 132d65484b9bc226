"""User and DriveCredential models.

Users authenticate with email/password (plus an optional second factor)
and receive JWT tokens. A user can link one Google Drive account; the
OAuth tokens live in DriveCredential and are upserted on every refresh.
"""

from sqlalchemy import Column, String, DateTime, Boolean, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class User(Base):
    """User account.

    Roles:
        admin    manages the company, its plan, folders and audit trail
        employee reads its own folder and chats with the assistant
    """

    __tablename__ = "users"

    user_id = Column(String(50), primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(255), nullable=False)
    password_hash = Column(Text, nullable=True)
    role = Column(String(20), nullable=False, default="employee")
    is_active = Column(Boolean, nullable=False, default=True)

    company_id = Column(String(50), ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)

    # Messaging identities used to attribute inbound webhook messages.
    telegram_id = Column(String(64), unique=True, nullable=True)
    whatsapp_number = Column(String(32), unique=True, nullable=True)
    phone = Column(String(32), nullable=True)

    current_plan_id = Column(String(50), ForeignKey("plans.id"), nullable=True)
    plan_expiration = Column(DateTime(timezone=True), nullable=True)

    mfa_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    company = relationship("Company", back_populates="users")
    current_plan = relationship("Plan")
    drive_credential = relationship(
        "DriveCredential",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )


class DriveCredential(Base):
    """OAuth tokens for a user's Google Drive. One row per user."""

    __tablename__ = "drive_credentials"

    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String(20), nullable=False, default="Bearer")
    scope = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="drive_credential")
