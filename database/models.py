"""
SQLAlchemy ORM models for connected accounts, their sync history and
pending OAuth handshakes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JSON_TYPE = JSONB().with_variant(JSON, "sqlite")

# Integration.status values
STATUS_CONNECTED = "connected"
STATUS_ERROR = "error"
STATUS_EXPIRED = "expired"
STATUS_DISCONNECTED = "disconnected"

# SyncLog.status values
SYNC_SUCCESS = "success"
SYNC_ERROR = "error"
SYNC_PARTIAL = "partial"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "account_id", name="uq_integrations_user_provider_account"),
        Index("ix_integrations_status_last_sync", "status", "last_sync_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    account_id = Column(String(256), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSON_TYPE, default=list)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    status = Column(String(16), nullable=False, default=STATUS_CONNECTED)
    sync_frequency = Column(Integer, default=3600)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True))

    sync_logs = relationship(
        "SyncLog",
        back_populates="integration",
        cascade="all, delete-orphan",
        order_by="SyncLog.started_at.desc()",
    )


class SyncLog(Base):
    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_watermark", "integration_id", "data_type", "status", "completed_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    data_type = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)
    records_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    metadata_ = Column("metadata", JSON_TYPE)
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))

    integration = relationship("Integration", back_populates="sync_logs")


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state = Column(String(128), primary_key=True)
    data = Column(Text, nullable=False)          # JSON: user_id, provider, metadata, code_verifier
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
