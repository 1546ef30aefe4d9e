"""Fingerprint store: data access for seeded-content descriptors."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from resonance.embedder import top_k_similar
from resonance.models import ACTIVE_STATUSES, CONTENT_TYPES, Fingerprint, status_rank
from resonance.utils import as_utc, json_parse, to_json, utc_now

log = logging.getLogger(__name__)


def key_phrases(fp: Fingerprint) -> list[str]:
    return [str(p) for p in json_parse(fp.key_phrases_json, []) if p]


def unique_angles(fp: Fingerprint) -> list[str]:
    return [str(a) for a in json_parse(fp.unique_angles_json, []) if a]


def expected_channels(fp: Fingerprint) -> list[str]:
    return [str(c) for c in json_parse(fp.expected_channels_json, []) if c]


def embedding(fp: Fingerprint) -> list[float] | None:
    vec = json_parse(fp.embedding_json, None)
    return vec if isinstance(vec, list) and vec else None


def export_time(fp: Fingerprint) -> datetime:
    return as_utc(fp.exported_at or fp.created_at) or utc_now()


def load_active_fingerprints(
    session: Session, organization_id: str, now: datetime | None = None,
) -> list[Fingerprint]:
    """Fingerprints eligible for matching, in ascending id order.

    Eligible means status exported/matched and tracking window still open.
    """
    now = as_utc(now) or utc_now()
    return list(session.execute(
        select(Fingerprint)
        .where(
            Fingerprint.organization_id == organization_id,
            Fingerprint.export_status.in_(ACTIVE_STATUSES),
            Fingerprint.tracking_window_end >= now,
        )
        .order_by(Fingerprint.id)
    ).scalars().all())


def get_fingerprint(session: Session, fingerprint_id: int) -> Fingerprint | None:
    return session.execute(
        select(Fingerprint).where(Fingerprint.id == fingerprint_id)
    ).scalars().first()


def list_fingerprints(session: Session, organization_id: str, campaign_id: str | None = None) -> list[Fingerprint]:
    query = select(Fingerprint).where(Fingerprint.organization_id == organization_id)
    if campaign_id:
        query = query.where(Fingerprint.campaign_id == campaign_id)
    return list(session.execute(query.order_by(Fingerprint.id)).scalars().all())


def create_fingerprint(
    session: Session,
    *,
    organization_id: str,
    campaign_id: str,
    tracking_window_end: datetime,
    content_id: str = "",
    key_phrases: list[str] | None = None,
    unique_angles: list[str] | None = None,
    content_type: str = "other",
    expected_channels: list[str] | None = None,
    export_status: str = "exported",
    exported_at: datetime | None = None,
    embedding: list[float] | None = None,
) -> Fingerprint:
    """Register a fingerprint at export time (caller must commit)."""
    content_type = content_type.strip().lower().replace("-", "_")
    if content_type not in CONTENT_TYPES:
        raise ValueError(f"Unknown content type: {content_type!r}")
    if status_rank(export_status) < 0:
        raise ValueError(f"Unknown export status: {export_status!r}")
    if exported_at is None and export_status != "draft":
        exported_at = utc_now()
    fp = Fingerprint(
        organization_id=organization_id,
        campaign_id=campaign_id,
        content_id=content_id or "",
        key_phrases_json=to_json(key_phrases or []),
        unique_angles_json=to_json(unique_angles or []),
        content_type=content_type,
        expected_channels_json=to_json(expected_channels or []),
        export_status=export_status,
        exported_at=as_utc(exported_at),
        tracking_window_end=as_utc(tracking_window_end),
        embedding_json=to_json(embedding) if embedding else None,
    )
    session.add(fp)
    session.flush()
    return fp


def advance_status(fp: Fingerprint, status: str) -> bool:
    """Move the fingerprint forward to *status*. Returns True if it changed.

    Backward transitions are ignored, so repeated or out-of-order writes commute.
    """
    if status_rank(status) < 0:
        raise ValueError(f"Unknown export status: {status!r}")
    if status_rank(status) <= status_rank(fp.export_status):
        return False
    fp.export_status = status
    if status == "exported" and fp.exported_at is None:
        fp.exported_at = utc_now()
    return True


def find_similar_fingerprints(
    fingerprints: list[Fingerprint],
    query_vector: list[float],
    *,
    threshold: float,
    top_k: int,
) -> list[tuple[Fingerprint, float]]:
    """Nearest-neighbour search over the given fingerprints' stored embeddings."""
    by_id: dict[int, Fingerprint] = {}
    vectors: list[list[float]] = []
    ids: list[int] = []
    for fp in fingerprints:
        vec = embedding(fp)
        if vec is None:
            continue
        by_id[fp.id] = fp
        vectors.append(vec)
        ids.append(fp.id)
    hits = top_k_similar(query_vector, vectors, ids, top_k=top_k, threshold=threshold)
    return [(by_id[fid], score) for fid, score in hits]


def fingerprint_text(fp: Fingerprint) -> str:
    """Text used to embed a fingerprint."""
    return " ".join([*key_phrases(fp), *unique_angles(fp)])
