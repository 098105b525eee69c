"""
Database models for the render API
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class UserRole(enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class RenderStatus(enum.Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class RenderMode(enum.Enum):
    PREVIEW = "preview"
    NORMAL = "normal"


class UserAccount(Base):
    """
    Account with a render credit balance.

    Rows are created and managed by the account service; this API only reads
    them and decrements credit through an atomic conditional UPDATE.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(200), nullable=True)
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False)
    credit = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    ledger_entries = relationship("LedgerEntry", back_populates="user")
    render_attempts = relationship("RenderAttempt", back_populates="user")

    __table_args__ = (CheckConstraint("credit >= 0", name="ck_users_credit_non_negative"),)

    def __repr__(self):
        return f"<UserAccount(id={self.id}, email='{self.email}', credit={self.credit})>"


class LedgerEntry(Base):
    """Append-only record of a credit balance change"""

    __tablename__ = "credit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String(50), nullable=False, default="render")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    user = relationship("UserAccount", back_populates="ledger_entries")

    __table_args__ = (Index("idx_credit_logs_user_reason_created", "user_id", "reason", "created_at"),)

    def __repr__(self):
        return f"<LedgerEntry(user_id={self.user_id}, delta={self.delta}, reason='{self.reason}')>"


class RenderAttempt(Base):
    """Audit record of one render request (not a queued job)"""

    __tablename__ = "render_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    mode = Column(Enum(RenderMode), nullable=False)
    status = Column(Enum(RenderStatus), default=RenderStatus.PROCESSING, nullable=False, index=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("UserAccount", back_populates="render_attempts")

    def __repr__(self):
        return f"<RenderAttempt(id={self.id}, mode={self.mode}, status={self.status})>"
