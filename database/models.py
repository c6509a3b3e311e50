"""
SQLAlchemy ORM models for the connection service tables.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
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

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(16), nullable=False, default="client")
    first_name = Column(String(128))
    last_name = Column(String(128))
    business_name = Column(String(255))
    password_hash = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connections = relationship("ApiKey", back_populates="user", cascade="all, delete-orphan")


class ApiKey(Base):
    """One user's linked external account (the *connection*)."""

    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("user_id", "service", name="uq_api_keys_user_service"),
        Index("ix_api_keys_expiry", "service", "is_active", "token_expires_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(128), nullable=False, default="HighLevel OAuth Connection")
    service = Column(String(32), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    location_id = Column(String(128))
    location_name = Column(String(255))
    location_timezone = Column(String(64))
    company_id = Column(String(128))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_used_at = Column(DateTime(timezone=True))
    expired_at = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="connections")


class OAuthState(Base):
    __tablename__ = "oauth_states"

    state = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    admin_id = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ConnectionEvent(Base):
    __tablename__ = "user_connection_events"
    __table_args__ = (Index("ix_connection_events_user_created", "user_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    event_type = Column(String(32), nullable=False)
    location_id = Column(String(128))
    location_name = Column(String(255))
    token_expires_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    metadata_ = Column("metadata", JSONType, default=dict)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class IntegrationError(Base):
    __tablename__ = "user_integration_errors"
    __table_args__ = (Index("ix_integration_errors_user_resolved", "user_id", "resolved"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    error_type = Column(String(64), nullable=False)
    error_source = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=False)
    error_code = Column(String(64))
    request_data = Column(JSONType, default=dict)
    response_data = Column(JSONType, default=dict)
    stack_trace = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ActivityLog(Base):
    __tablename__ = "user_activity_logs"
    __table_args__ = (Index("ix_activity_logs_user_created", "user_id", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    event_type = Column(String(32), nullable=False)
    event_category = Column(String(64), nullable=False)
    event_name = Column(String(128), nullable=False)
    description = Column(Text, nullable=False, default="")
    severity = Column(String(16), nullable=False, default="info")
    metadata_ = Column("metadata", JSONType, default=dict)
    created_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class TokenRefreshLog(Base):
    __tablename__ = "token_refresh_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False)
    refresh_status = Column(String(16), nullable=False)
    token_expires_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    refreshed_by = Column(String(32), nullable=False, default="scheduled_job")
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ScheduledJobRun(Base):
    __tablename__ = "scheduled_job_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_name = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="running")
    tokens_checked = Column(Integer, default=0)
    tokens_refreshed = Column(Integer, default=0)
    tokens_failed = Column(Integer, default=0)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True))
    metadata_ = Column("metadata", JSONType, default=dict)
