"""Document model: a file stored in Drive and indexed for search."""

from sqlalchemy import Column, Index, String, Text, Integer, BigInteger, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_company_id", "company_id"),
        Index("ix_documents_folder_id", "folder_id"),
    )

    id = Column(String(50), primary_key=True)
    folder_id = Column(String(50), ForeignKey("folders.id", ondelete="CASCADE"), nullable=False)
    company_id = Column(String(50), ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    uploaded_by = Column(String(50), ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)

    name = Column(String(500), nullable=False)
    mime_type = Column(String(255), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    description = Column(Text, nullable=True)

    drive_file_id = Column(String(255), nullable=True)
    drive_link = Column(Text, nullable=True)

    # Extracted plain text (text-like uploads only) and its semantic vector.
    content_text = Column(Text, nullable=True)
    embedding = Column(JSON, nullable=True)
    token_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    folder = relationship("Folder", back_populates="documents")
