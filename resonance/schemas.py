"""Pydantic request/response schemas for the Resonance API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from resonance.models import SOURCE_TYPES

ContentType = Literal["press_release", "social_post", "byline", "pitch", "other"]
ExportStatus = Literal["draft", "exported", "matched"]


class AttributionCheckRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    title: str = ""
    content: str = Field(min_length=1)
    url: str = Field(min_length=1)
    source_type: str = "other"
    source_outlet: str | None = None
    published_at: datetime | None = None
    estimated_reach: int | None = Field(default=None, ge=0)

    @field_validator("source_type")
    @classmethod
    def normalize_source_type(cls, v: str) -> str:
        v = (v or "other").strip().lower()
        return v if v in SOURCE_TYPES else "other"


class AttributionOut(BaseModel):
    id: int
    organization_id: str
    fingerprint_id: int
    campaign_id: str
    source_type: str
    source_url: str
    source_outlet: str | None = None
    content_title: str
    published_at: str | None = None
    confidence_score: float
    match_type: str
    match_details: dict[str, Any] = {}
    estimated_reach: int | None = None
    sentiment: str | None = None
    created_at: str | None = None


class AttributionCheckResponse(BaseModel):
    match: bool
    attribution: AttributionOut | None = None
    reason: str | None = None
    created: bool | None = None
    error: str | None = None


class OutcomeRecordRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    campaign_id: str | None = None
    strategy_id: str | None = None
    content_id: str | None = None

    @model_validator(mode="after")
    def require_scope(self) -> OutcomeRecordRequest:
        if not (self.campaign_id or self.strategy_id or self.content_id):
            raise ValueError("one of campaign_id, strategy_id or content_id is required")
        return self


class OutcomeOut(BaseModel):
    id: int
    organization_id: str
    strategy_id: str
    outcome_type: str
    effectiveness_score: float
    key_learnings: list[str] = []
    success_factors: dict[str, Any] = {}
    failure_factors: dict[str, bool] = {}
    sentiment: dict[str, int] = {}
    scope: dict[str, str] = {}
    total_coverage: int
    total_reach: int
    avg_confidence: float
    created_at: str | None = None


class OutcomeRecordResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    outcome: OutcomeOut | None = None
    outcome_type: str | None = Field(default=None, alias="outcomeType")
    effectiveness_score: float | None = Field(default=None, alias="effectivenessScore")
    learnings: list[str] = []
    error: str | None = None


class FingerprintCreate(BaseModel):
    organization_id: str = Field(min_length=1)
    campaign_id: str = Field(min_length=1)
    content_id: str = ""
    key_phrases: list[str] = []
    unique_angles: list[str] = []
    content_type: ContentType = "other"
    expected_channels: list[str] = []
    export_status: ExportStatus = "exported"
    exported_at: datetime | None = None
    tracking_window_end: datetime
    embedding: list[float] | None = None

    @field_validator("content_type", mode="before")
    @classmethod
    def normalize_content_type(cls, v: Any) -> Any:
        # "press-release" and "press_release" name the same type
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v


class FingerprintOut(BaseModel):
    id: int
    organization_id: str
    campaign_id: str
    content_id: str
    key_phrases: list[str]
    unique_angles: list[str]
    content_type: str
    expected_channels: list[str]
    export_status: str
    exported_at: str | None = None
    tracking_window_end: str
    has_embedding: bool


class StrategyRegister(BaseModel):
    organization_id: str = Field(min_length=1)
    strategy_id: str = Field(min_length=1)
    content_summary: str = ""
    embedding: list[float] | None = None


class StrategyOut(BaseModel):
    strategy_id: str
    salience: float
    access_count: int
    last_accessed_at: str | None = None
    content_summary: str = ""


class RecommendationOut(BaseModel):
    strategy_id: str
    score: float
    link_weight: float
    salience: float
    effectiveness_score: float
    recency: float
    summary: str = ""


class StatsOut(BaseModel):
    fingerprints: int
    active_fingerprints: int
    attributions: int
    by_match_type: dict[str, int]
    outcomes: int
    by_outcome_type: dict[str, int]
    waypoints: int
