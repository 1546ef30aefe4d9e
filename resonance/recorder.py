"""Attribution recorder: persist confirmed matches exactly once."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resonance.fingerprints import advance_status
from resonance.matching import Candidate, MatchResult
from resonance.models import SOURCE_TYPES, Attribution
from resonance.utils import as_utc, clip, to_json

log = logging.getLogger(__name__)

MAX_TITLE_CHARS = 500
MAX_TEXT_CHARS = 5000


def find_attribution(session: Session, fingerprint_id: int, source_url: str) -> Attribution | None:
    return session.execute(
        select(Attribution).where(
            Attribution.fingerprint_id == fingerprint_id,
            Attribution.source_url == source_url,
        )
    ).scalars().first()


def record_attribution(
    session: Session, organization_id: str, match: MatchResult, candidate: Candidate,
) -> tuple[Attribution, bool]:
    """Persist *match* for *candidate* and mark the fingerprint matched.

    Returns ``(attribution, created)``. An existing row for the same
    (fingerprint, URL) pair is returned unchanged with ``created=False``.
    Caller must commit.
    """
    fp = match.fingerprint
    existing = find_attribution(session, fp.id, candidate.url)
    if existing is not None:
        log.debug("Attribution already recorded for fp=%s url=%s", fp.id, candidate.url)
        return existing, False

    source_type = candidate.source_type if candidate.source_type in SOURCE_TYPES else "other"
    attribution = Attribution(
        organization_id=organization_id,
        fingerprint_id=fp.id,
        campaign_id=fp.campaign_id,
        source_type=source_type,
        source_url=candidate.url,
        source_outlet=candidate.source_outlet or None,
        content_title=clip(candidate.title, MAX_TITLE_CHARS),
        content_text=clip(candidate.content, MAX_TEXT_CHARS),
        published_at=as_utc(candidate.published_at),
        confidence_score=match.confidence,
        match_type=match.match_type,
        match_details_json=to_json(match.details),
        estimated_reach=candidate.estimated_reach,
    )
    # caller's pending writes stay outside the savepoint
    session.flush()
    try:
        with session.begin_nested():
            session.add(attribution)
    except IntegrityError:
        # lost a race against a concurrent insert of the same pair
        existing = find_attribution(session, fp.id, candidate.url)
        if existing is None:
            raise
        return existing, False

    advance_status(fp, "matched")
    log.info(
        "Recorded attribution %s: fp=%s campaign=%s url=%s",
        attribution.id, fp.id, fp.campaign_id, candidate.url,
    )
    return attribution, True
