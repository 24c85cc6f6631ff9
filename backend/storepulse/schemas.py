"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .models import IntegrationStatusEnum, PlatformEnum, ReportTypeEnum
from .services.metric_store import as_utc


# =============================================================================
# AGGREGATION / DASHBOARD
# =============================================================================

class AggregateRequest(BaseModel):
    """Period-over-period aggregation query.

    Omit `integration_ids` to use every connected integration of the
    organization. Omit the previous window to compare against the
    equal-length window immediately before the current one.
    """

    integration_ids: Optional[List[UUID]] = Field(
        default=None,
        description="Integrations to include (default: all connected)",
    )
    current_start: datetime = Field(description="Current window start (inclusive)")
    current_end: datetime = Field(description="Current window end (exclusive)")
    previous_start: Optional[datetime] = Field(default=None, description="Comparison window start")
    previous_end: Optional[datetime] = Field(default=None, description="Comparison window end")

    model_config = {
        "json_schema_extra": {
            "example": {
                "current_start": "2025-01-01T00:00:00Z",
                "current_end": "2025-01-31T00:00:00Z",
            }
        }
    }

    @field_validator("current_start", "current_end", "previous_start", "previous_end")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive timestamps are read as UTC so mixed inputs stay comparable
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def check_windows(self):
        if self.current_end <= self.current_start:
            raise ValueError("current_end must be after current_start")
        if (self.previous_start is None) != (self.previous_end is None):
            raise ValueError("previous_start and previous_end must be given together")
        if self.previous_start is not None and self.previous_end <= self.previous_start:
            raise ValueError("previous_end must be after previous_start")
        return self


class MetricOut(BaseModel):
    current: float
    previous: float
    change: float
    change_percent: float = Field(description="Percent change vs previous window (1 decimal)")
    trend: Literal["up", "down", "neutral"]


class WindowOut(BaseModel):
    start: datetime
    end: datetime


class AggregateResponse(BaseModel):
    metrics: Dict[str, MetricOut]
    has_data: bool
    window: Dict[str, Optional[WindowOut]]


class DashboardResponse(AggregateResponse):
    """Dashboard cards: `no_data` is a normal state, not an error."""

    state: Literal["ok", "no_data"]
    message: Optional[str] = None
    days: int


# =============================================================================
# REPORTS / INSIGHTS
# =============================================================================

class ReportCreate(BaseModel):
    """Report generation request. Custom reports need both dates."""

    type: Literal["weekly", "monthly", "custom"] = Field(default="weekly")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def check_custom_range(self):
        if self.type == "custom":
            if self.start_date is None or self.end_date is None:
                raise ValueError("custom reports require start_date and end_date")
            if self.end_date <= self.start_date:
                raise ValueError("end_date must be after start_date")
        return self


class ReportOut(BaseModel):
    id: UUID
    organization_id: UUID
    report_type: ReportTypeEnum
    title: str
    content: Dict[str, Any]
    date_range_start: datetime
    date_range_end: datetime
    is_read: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReadStatusUpdate(BaseModel):
    is_read: bool


class InsightOut(BaseModel):
    id: UUID
    organization_id: UUID
    type: str
    category: str
    title: str
    description: str
    impact_score: float
    urgency: Literal["low", "medium", "high"]
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    is_read: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# =============================================================================
# INTEGRATIONS
# =============================================================================

class IntegrationConnect(BaseModel):
    """Connect (or reconnect) a platform account.

    OAuth code exchange happens upstream; this endpoint receives the
    resulting access token / API key.
    """

    platform: PlatformEnum
    credentials: str = Field(min_length=1, description="Access token or secret API key")
    platform_account_id: Optional[str] = Field(
        default=None,
        description="Shop domain for Shopify, account id for Stripe, GA4 property id for Google Analytics",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "platform": "shopify",
                "credentials": "shpat_xxx",
                "platform_account_id": "mystore.myshopify.com",
            }
        }
    }

    @model_validator(mode="after")
    def check_account_id(self):
        if self.platform == PlatformEnum.shopify and not self.platform_account_id:
            raise ValueError("platform_account_id (shop domain) is required for Shopify")
        if self.platform == PlatformEnum.google_analytics and not self.platform_account_id:
            raise ValueError("platform_account_id (GA4 property id) is required for Google Analytics")
        return self


class IntegrationOut(BaseModel):
    """Integration without credentials."""

    id: UUID
    organization_id: UUID
    platform: PlatformEnum
    platform_account_id: Optional[str] = None
    status: IntegrationStatusEnum
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def platform_category(self) -> str:
        return self.platform.category


class SyncStatusOut(BaseModel):
    status: Literal["started", "queued", "already_running", "not_supported"]
    job_id: Optional[str] = None


class IntegrationConnectResponse(BaseModel):
    integration: IntegrationOut
    sync: SyncStatusOut


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
