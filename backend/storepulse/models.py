"""SQLAlchemy ORM models and enums.

This module defines the ingestion schema using UUID primary keys and explicit
relationships. Provider credentials are stored encrypted (see
`storepulse.security`) and never leave this table in plaintext.

Tables:
    - organizations: anchor for integrations, reports and insights
    - integrations: one connected external account per (organization, platform)
    - webhook_events: audit log of every inbound delivery attempt
    - data_points: immutable, timestamped metric observations
    - insights / reports: generated narrative artifacts
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Enum,
    ForeignKey,
    Numeric,
    JSON,
    Text,
    Boolean,
    Float,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.types import Uuid
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    """External platforms an organization can connect.

    The category each platform fills is exposed via `category`.
    """
    shopify = "shopify"
    stripe = "stripe"
    google_analytics = "google_analytics"
    meta_ads = "meta_ads"
    mailchimp = "mailchimp"

    @property
    def category(self) -> str:
        return PLATFORM_CATEGORIES[self]


PLATFORM_CATEGORIES = {
    PlatformEnum.shopify: "commerce",
    PlatformEnum.stripe: "payments",
    PlatformEnum.google_analytics: "web_analytics",
    PlatformEnum.meta_ads: "ads",
    PlatformEnum.mailchimp: "email_marketing",
}


class IntegrationStatusEnum(str, enum.Enum):
    pending = "pending"
    active = "active"
    error = "error"
    disconnected = "disconnected"


class WebhookStatusEnum(str, enum.Enum):
    """Lifecycle of a WebhookEvent.

    received -> processed | failed | duplicate
    Terminal on arrival: signature_verification_failed, invalid_json, invalid_payload
    """
    received = "received"
    processed = "processed"
    failed = "failed"
    duplicate = "duplicate"
    signature_verification_failed = "signature_verification_failed"
    invalid_json = "invalid_json"
    invalid_payload = "invalid_payload"


class ReportTypeEnum(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


# Core models ----------------------------------------------------

class Organization(Base):
    """Organization owns integrations and the reports generated from them.

    Organization management lives outside this service; only the identity
    and display name are kept here.
    """
    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    integrations = relationship("Integration", back_populates="organization")
    insights = relationship("Insight", back_populates="organization", cascade="all, delete-orphan")
    reports = relationship("Report", back_populates="organization", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class Integration(Base):
    """Integration is a connected external account (Shopify store, Stripe account...).

    At most one integration exists per (organization, platform). Integrations
    are never hard-deleted while DataPoints reference them: disconnecting sets
    status to `disconnected` and clears the credentials.
    """
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "platform", name="uq_integration_org_platform"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False, index=True)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    platform_account_id = Column(String, nullable=True)  # shop domain, Stripe account id, GA property
    credentials_enc = Column(Text, nullable=True)  # Fernet ciphertext, see security.encrypt_secret
    status = Column(
        Enum(IntegrationStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=IntegrationStatusEnum.pending,
    )
    last_sync_at = Column(DateTime(timezone=True), nullable=True)  # Last successful sync
    last_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)

    organization = relationship("Organization", back_populates="integrations")
    webhook_events = relationship("WebhookEvent", back_populates="integration")
    data_points = relationship("DataPoint", back_populates="integration")

    def __str__(self):
        return f"{self.platform.value} ({self.platform_account_id or 'unlinked'})"


class WebhookEvent(Base):
    """One row per inbound webhook delivery attempt.

    The partial unique index guarantees at most one `processed` row per
    (integration, topic, external_id): concurrent deliveries of the same event
    race on this index and the loser is marked `duplicate`.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index(
            "uq_webhook_events_processed",
            "integration_id",
            "topic",
            "external_id",
            unique=True,
            postgresql_where=text("status = 'processed'"),
            sqlite_where=text("status = 'processed'"),
        ),
        Index("ix_webhook_events_lookup", "integration_id", "topic", "external_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id = Column(Uuid, ForeignKey("integrations.id"), nullable=False)
    topic = Column(String, nullable=False)
    status = Column(
        Enum(WebhookStatusEnum, values_callable=_enum_values, native_enum=False, length=40),
        nullable=False,
    )
    external_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    integration = relationship("Integration", back_populates="webhook_events")

    def __str__(self):
        return f"{self.topic} [{self.status.value}]"


class DataPoint(Base):
    """Immutable metric observation.

    `date_recorded` is business time (when the order happened), not ingestion
    time. Corrections are written as new compensating rows, never edits.
    Revenue-like rows always carry `currency` in metadata.
    """
    __tablename__ = "data_points"
    __table_args__ = (
        Index("ix_data_points_range", "integration_id", "metric_type", "date_recorded"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id = Column(Uuid, ForeignKey("integrations.id"), nullable=False)
    metric_type = Column(String, nullable=False)
    value = Column(Numeric(18, 4), nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    date_recorded = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    integration = relationship("Integration", back_populates="data_points")


class Insight(Base):
    __tablename__ = "insights"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # trend, anomaly, recommendation, opportunity
    category = Column(String, nullable=False)  # revenue, customers, performance, growth, setup
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    impact_score = Column(Float, nullable=False, default=0.0)
    urgency = Column(String, nullable=False, default="low")
    meta = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    organization = relationship("Organization", back_populates="insights")


class Report(Base):
    __tablename__ = "reports"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False, index=True)
    report_type = Column(Enum(ReportTypeEnum, values_callable=_enum_values), nullable=False)
    title = Column(String, nullable=False)
    content = Column(JSON, nullable=False)
    date_range_start = Column(DateTime(timezone=True), nullable=False)
    date_range_end = Column(DateTime(timezone=True), nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    organization = relationship("Organization", back_populates="reports")
