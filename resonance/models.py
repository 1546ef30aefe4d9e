from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------

CONTENT_TYPES = ("press_release", "social_post", "byline", "pitch", "other")
EXPORT_STATUSES = ("draft", "exported", "matched")
ACTIVE_STATUSES = ("exported", "matched")
SOURCE_TYPES = ("news", "twitter", "linkedin", "blog", "other")
MATCH_TYPES = ("exact_phrase", "semantic", "contextual")
OUTCOME_TYPES = ("success", "partial", "minimal", "failed")
LINK_SUCCESSFUL_PATTERN = "successful_pattern"

# draft -> exported -> matched; a status never moves backwards
_STATUS_RANK = {status: rank for rank, status in enumerate(EXPORT_STATUSES)}


def status_rank(status: str) -> int:
    return _STATUS_RANK.get(status, -1)


class Fingerprint(Base):
    __tablename__ = "campaign_fingerprints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    content_id: Mapped[str] = mapped_column(String(100), default="")
    key_phrases_json: Mapped[str] = mapped_column(Text, default="[]")
    unique_angles_json: Mapped[str] = mapped_column(Text, default="[]")
    content_type: Mapped[str] = mapped_column(String(30), default="other")
    expected_channels_json: Mapped[str] = mapped_column(Text, default="[]")
    export_status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | exported | matched
    exported_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    tracking_window_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    embedding_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    attributions: Mapped[list[Attribution]] = relationship(
        "Attribution", back_populates="fingerprint", cascade="all, delete-orphan",
    )


class Attribution(Base):
    __tablename__ = "content_attributions"
    __table_args__ = (
        UniqueConstraint("fingerprint_id", "source_url", name="uq_attribution_fingerprint_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fingerprint_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaign_fingerprints.id"), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(20), default="other")
    source_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    source_outlet: Mapped[str | None] = mapped_column(String(300), nullable=True)
    content_title: Mapped[str] = mapped_column(String(500), default="")
    content_text: Mapped[str] = mapped_column(Text, default="")
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False)  # exact_phrase | semantic | contextual
    match_details_json: Mapped[str] = mapped_column(Text, default="{}")
    estimated_reach: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sentiment: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    fingerprint: Mapped[Fingerprint] = relationship("Fingerprint", back_populates="attributions")


class StrategyOutcome(Base):
    __tablename__ = "strategy_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    strategy_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    outcome_type: Mapped[str] = mapped_column(String(20), nullable=False)  # success | partial | minimal | failed
    effectiveness_score: Mapped[float] = mapped_column(Float, default=0.0)
    key_learnings_json: Mapped[str] = mapped_column(Text, default="[]")
    success_factors_json: Mapped[str] = mapped_column(Text, default="{}")
    failure_factors_json: Mapped[str] = mapped_column(Text, default="{}")
    sentiment_json: Mapped[str] = mapped_column(Text, default="{}")
    scope_json: Mapped[str] = mapped_column(Text, default="{}")
    total_coverage: Mapped[int] = mapped_column(Integer, default=0)
    total_reach: Mapped[int] = mapped_column(Integer, default=0)
    avg_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class StrategyEmbedding(Base):
    __tablename__ = "strategy_embeddings"
    __table_args__ = (
        UniqueConstraint("organization_id", "strategy_id", name="uq_strategy_embedding"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    strategy_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    content_summary: Mapped[str] = mapped_column(Text, default="")
    embedding_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    salience: Mapped[float] = mapped_column(Float, default=0.5)
    access_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class StrategyWaypoint(Base):
    __tablename__ = "strategy_waypoints"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "from_strategy_id", "to_strategy_id", "link_type",
            name="uq_strategy_waypoint",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_strategy_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    to_strategy_id: Mapped[str] = mapped_column(String(100), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    link_type: Mapped[str] = mapped_column(String(50), default=LINK_SUCCESSFUL_PATTERN)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
