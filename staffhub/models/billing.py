"""Plan catalogue, purchases and LLM token allowance.

Prices are whole Chilean pesos (CLP). A NULL folder or file limit means
unlimited.
"""

from sqlalchemy import Column, String, Text, Integer, BigInteger, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from ..database import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(50), primary_key=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    storage_limit_bytes = Column(BigInteger, nullable=False)
    max_folders = Column(Integer, nullable=True)
    max_files = Column(Integer, nullable=True)
    token_limit = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)


class Extension(Base):
    """Add-on bundle purchasable on top of a plan."""

    __tablename__ = "extensions"

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False, default=0)
    # Drive subfolder created for the extension; NULL when it has none.
    folder_type = Column(String(50), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)


class PlanExtension(Base):
    """An extension a user has purchased."""

    __tablename__ = "plan_extensions"
    __table_args__ = (
        UniqueConstraint("user_id", "extension_id", name="uq_plan_extensions_user_extension"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(String(50), ForeignKey("plans.id"), nullable=False)
    extension_id = Column(String(50), ForeignKey("extensions.id"), nullable=False)
    purchased_at = Column(DateTime(timezone=True), server_default=func.now())


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(String(50), ForeignKey("plans.id"), nullable=False)
    extension_ids = Column(JSON, nullable=False, default=list)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="CLP")
    # Allowed values: pending, paid, failed
    status = Column(String(20), nullable=False, default="pending")
    provider = Column(String(50), nullable=False)
    provider_reference = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TokenUsage(Base):
    """LLM tokens consumed by a user against the allowance of their plan."""

    __tablename__ = "token_usage"

    user_id = Column(String(50), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    # 0 = no plan allowance recorded, usage is tracked but not capped.
    token_limit = Column(Integer, nullable=False, default=0)
    last_operation = Column(String(50), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
