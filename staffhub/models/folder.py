"""Folder, KnowledgeItem and ConversationMessage models.

Three kinds of folder share one table:
    admin_master  "Master - StaffHub", one per admin email
    extension     subfolders of the master (StaffHub, Abogados, Entrenador)
    employee      one per (company, employee email)

Each employee folder carries a small knowledge base and the assistant
conversation history for that employee.
"""

from sqlalchemy import Column, String, Text, Integer, DateTime, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base

FOLDER_ADMIN_MASTER = "admin_master"
FOLDER_EXTENSION = "extension"
FOLDER_EMPLOYEE = "employee"

KNOWLEDGE_KINDS = ("faqs", "documents", "policies", "procedures")


class Folder(Base):
    __tablename__ = "folders"
    __table_args__ = (
        UniqueConstraint("company_id", "employee_email", name="uq_folders_company_employee"),
        Index("ix_folders_owner_email", "owner_email"),
    )

    id = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    folder_type = Column(String(20), nullable=False)
    parent_id = Column(String(50), ForeignKey("folders.id", ondelete="CASCADE"), nullable=True)

    company_id = Column(String(50), ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    owner_user_id = Column(String(50), ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)
    owner_email = Column(String(255), nullable=True)

    # Employee folders only
    employee_email = Column(String(255), nullable=True)
    employee_name = Column(String(255), nullable=True)
    company_name = Column(String(255), nullable=True)
    settings = Column(JSON, nullable=True)

    # Admin master / extension folders only
    plan_name = Column(String(100), nullable=True)
    extension_type = Column(String(50), nullable=True)

    drive_folder_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    children = relationship("Folder", cascade="all, delete-orphan")
    documents = relationship("Document", back_populates="folder", cascade="all, delete-orphan")
    knowledge_items = relationship(
        "KnowledgeItem",
        back_populates="folder",
        cascade="all, delete-orphan",
        order_by="KnowledgeItem.id",
    )
    messages = relationship(
        "ConversationMessage",
        back_populates="folder",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.id",
    )


class KnowledgeItem(Base):
    """An FAQ, document reference, policy or procedure in an employee's knowledge base."""

    __tablename__ = "knowledge_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    folder_id = Column(String(50), ForeignKey("folders.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    folder = relationship("Folder", back_populates="knowledge_items")


class ConversationMessage(Base):
    """One turn of an employee's conversation with the assistant."""

    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    folder_id = Column(String(50), ForeignKey("folders.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    channel = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    folder = relationship("Folder", back_populates="messages")
