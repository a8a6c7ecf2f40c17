"""SQLAlchemy ORM models and enums.

This module defines the sync schema using UUID primary keys and explicit
relationships. Provider credentials live in `tokens` (encrypted), ad
accounts in `connections`, and synced metrics in `insights_daily` with an
audit trail in `insights_raw`.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"
    google = "google"


class LevelEnum(str, enum.Enum):
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class SyncJobTypeEnum(str, enum.Enum):
    daily = "daily"
    intraday = "intraday"
    backfill = "backfill"


class SyncJobStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class ConnectionStatus:
    """Values stored in `Connection.status`."""

    active = "active"
    syncing = "syncing"
    error = "error"
    token_expired = "token_expired"
    disconnected = "disconnected"


# Core models ----------------------------------------------------

class Workspace(Base):
    """Workspace groups the ad accounts (connections) of one company."""
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    connections = relationship("Connection", back_populates="workspace")

    def __str__(self):
        return self.name


class Token(Base):
    """Encrypted provider credential bundle.

    WHAT:
        Stores Meta / Google tokens with symmetric encryption applied, plus
        refresh bookkeeping (attempt counter, last error).
    REFERENCES:
        - adpulse/security.py (TokenCipher)
        - adpulse/services/token_service.py
    """
    __tablename__ = "tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    access_token_enc = Column(String, nullable=True)
    refresh_token_enc = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scope = Column(String, nullable=True)

    refresh_attempts = Column(Integer, default=0, nullable=False)
    last_refresh_at = Column(DateTime, nullable=True)
    last_refresh_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connections = relationship("Connection", back_populates="token")

    def __str__(self):
        expires = self.expires_at.strftime('%Y-%m-%d %H:%M') if self.expires_at else 'no-expiry'
        return f"{self.provider.value} token (expires: {expires})"


class Connection(Base):
    """Connection represents one ad account on an advertising platform.

    Each connection belongs to ONE workspace. `timezone` decides what
    "yesterday" means for the daily sync; `currency_code` is used for display.
    """
    __tablename__ = "connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_account_id = Column(String, nullable=False)  # act_123 / 10-digit customer id
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ConnectionStatus.active)
    timezone = Column(String, nullable=True)
    currency_code = Column(String, nullable=True)
    requires_reconnect = Column(Boolean, default=False, nullable=False)
    # Google: manager (MCC) account used as login-customer-id
    login_customer_id = Column(String, nullable=True)
    connected_at = Column(DateTime, default=datetime.utcnow)

    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    workspace = relationship("Workspace", back_populates="connections")

    token_id = Column(UUID(as_uuid=True), ForeignKey("tokens.id"))
    token = relationship("Token", back_populates="connections")

    sync_state = relationship("SyncState", back_populates="connection", uselist=False)

    def __str__(self):
        return f"{self.name} ({self.provider.value})"


class InsightDaily(Base):
    """One row of normalized metrics per (entity, date).

    Columns mirror `ExtractedMetrics`. Rates are stored as reported by the
    platform and never recomputed here; aggregation re-derives them.
    """
    __tablename__ = "insights_daily"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "connection_id", "level", "entity_id", "date",
            name="uq_insights_daily_entity_date",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    level = Column(Enum(LevelEnum, values_callable=_enum_values), nullable=False)

    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    adset_name = Column(String, nullable=True)
    date = Column(Date, nullable=False, index=True)

    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    frequency = Column(Float, nullable=False, default=0)

    ctr = Column(Float, nullable=False, default=0)
    cpc = Column(Float, nullable=False, default=0)
    cpm = Column(Float, nullable=False, default=0)
    cpp = Column(Float, nullable=False, default=0)

    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)
    roas = Column(Float, nullable=False, default=0)
    cost_per_result = Column(Float, nullable=False, default=0)
    leads = Column(Numeric(18, 4), nullable=False, default=0)

    inline_link_clicks = Column(Integer, nullable=False, default=0)
    cost_per_inline_link_click = Column(Float, nullable=False, default=0)
    outbound_clicks = Column(Integer, nullable=False, default=0)
    video_views = Column(Integer, nullable=False, default=0)

    actions_json = Column(JSON, nullable=True)
    action_values_json = Column(JSON, nullable=True)
    currency = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.date} - {self.level.value}:{self.entity_id} - {self.spend}"


class InsightRaw(Base):
    """Audit copy of every row fetched from a platform, as received."""
    __tablename__ = "insights_raw"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False, index=True)
    sync_job_id = Column(UUID(as_uuid=True), ForeignKey("sync_jobs.id"), nullable=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    level = Column(Enum(LevelEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=True)
    date_start = Column(Date, nullable=True)
    date_stop = Column(Date, nullable=True)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, default=datetime.utcnow)


class SyncJob(Base):
    """One execution of the fetch-then-upsert loop for a connection."""
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False, index=True)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    job_type = Column(Enum(SyncJobTypeEnum, values_callable=_enum_values), nullable=False)
    status = Column(
        Enum(SyncJobStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=SyncJobStatusEnum.pending,
    )
    date_from = Column(Date, nullable=True)
    date_to = Column(Date, nullable=True)
    levels = Column(JSON, nullable=True)

    fetched_rows = Column(Integer, default=0, nullable=False)
    upserted_rows = Column(Integer, default=0, nullable=False)
    unchanged_rows = Column(Integer, default=0, nullable=False)
    warnings_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    def __str__(self):
        return f"{self.job_type.value} sync ({self.status.value})"


class SyncState(Base):
    """Per-connection sync watermark and health."""
    __tablename__ = "sync_states"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id"), nullable=False, unique=True)
    last_daily_date_synced = Column(Date, nullable=True)
    last_intraday_synced_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connection = relationship("Connection", back_populates="sync_state")
