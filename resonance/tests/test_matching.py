"""Tests for the matching cascade: exact phrase, semantic, and contextual stages."""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from resonance.classifier import ClassifierJudgment, build_classifier_dossier, parse_judgment
from resonance.embedder import top_k_similar
from resonance.fingerprints import create_fingerprint
from resonance.matching import (
    Candidate, ContextualMatcher, MatchingCascade, MatchResult, NoMatch,
)
from resonance.models import Base
from resonance.services import Gateways, check_attribution, embed_missing_fingerprints
from resonance.utils import utc_now

ORG = "org-1"


# ---------------------------------------------------------------------------
# Fixtures & fakes
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def make_fp(session: Session, **kwargs):
    defaults = dict(
        organization_id=ORG,
        campaign_id="camp-1",
        tracking_window_end=utc_now() + timedelta(days=30),
        key_phrases=[],
        export_status="exported",
    )
    defaults.update(kwargs)
    return create_fingerprint(session, **defaults)


def make_candidate(content: str, **kwargs) -> Candidate:
    defaults = dict(title="Headline", url="https://news.example/story", source_type="news")
    defaults.update(kwargs)
    return Candidate(content=content, **defaults)


class FakeEmbedder:
    def __init__(self, vector=None, error: Exception | None = None):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.error = error
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.error:
            raise self.error
        return self.vector


class RawVectorEmbedder:
    """Returns whatever the gateway handed back, unvalidated."""

    def __init__(self, payload):
        self.payload = payload

    async def embed(self, text: str):
        return self.payload


class FakeClassifier:
    """Judgments keyed by fingerprint id; optional per-fingerprint delays."""

    def __init__(self, judgments=None, delays=None, errors=None):
        self.judgments = judgments or {}
        self.delays = delays or {}
        self.errors = errors or {}
        self.seen: list[int] = []

    async def classify(self, fingerprint, candidate) -> ClassifierJudgment:
        self.seen.append(fingerprint.id)
        await asyncio.sleep(self.delays.get(fingerprint.id, 0))
        if fingerprint.id in self.errors:
            raise self.errors[fingerprint.id]
        return self.judgments.get(fingerprint.id, ClassifierJudgment())


# ---------------------------------------------------------------------------
# Candidate loading
# ---------------------------------------------------------------------------


class TestCandidateLoading:
    @pytest.mark.asyncio
    async def test_no_fingerprints(self, session):
        result = await MatchingCascade().match(session, ORG, make_candidate("anything"))
        assert isinstance(result, NoMatch)
        assert result.reason == "no_active_fingerprints"

    @pytest.mark.asyncio
    async def test_draft_fingerprints_are_not_active(self, session):
        make_fp(session, key_phrases=["alpha", "beta"], export_status="draft")
        result = await MatchingCascade().match(session, ORG, make_candidate("alpha beta"))
        assert isinstance(result, NoMatch)
        assert result.reason == "no_active_fingerprints"

    @pytest.mark.asyncio
    async def test_closed_tracking_window_is_not_active(self, session):
        make_fp(session, key_phrases=["alpha", "beta"],
                tracking_window_end=utc_now() - timedelta(hours=1))
        result = await MatchingCascade().match(session, ORG, make_candidate("alpha beta"))
        assert isinstance(result, NoMatch)
        assert result.reason == "no_active_fingerprints"

    @pytest.mark.asyncio
    async def test_other_organization_ignored(self, session):
        make_fp(session, organization_id="org-2", key_phrases=["alpha", "beta"])
        result = await MatchingCascade().match(session, ORG, make_candidate("alpha beta"))
        assert isinstance(result, NoMatch)
        assert result.reason == "no_active_fingerprints"

    @pytest.mark.asyncio
    async def test_matched_status_still_eligible(self, session):
        fp = make_fp(session, key_phrases=["alpha", "beta"], export_status="matched")
        result = await MatchingCascade().match(session, ORG, make_candidate("Alpha and Beta"))
        assert isinstance(result, MatchResult)
        assert result.fingerprint.id == fp.id


# ---------------------------------------------------------------------------
# Stage 1: exact phrase
# ---------------------------------------------------------------------------


class TestExactPhrase:
    @pytest.mark.asyncio
    async def test_carbon_neutral_scenario(self, session):
        fp = make_fp(session, key_phrases=["carbon-neutral fleet", "2030 target"])
        embedder = FakeEmbedder()
        classifier = FakeClassifier({fp.id: ClassifierJudgment(True, 0.99, "", [])})
        candidate = make_candidate(
            "The company confirmed its Carbon-Neutral Fleet plan and reiterated the 2030 TARGET."
        )
        result = await MatchingCascade(embedder, classifier).match(session, ORG, candidate)
        assert isinstance(result, MatchResult)
        assert result.fingerprint.id == fp.id
        assert result.match_type == "exact_phrase"
        assert result.confidence == 0.95
        assert result.details["phrase_hits"] == 2
        assert result.details["matched_phrases"] == ["carbon-neutral fleet", "2030 target"]
        # later stages are never consulted
        assert embedder.calls == 0
        assert classifier.seen == []

    @pytest.mark.asyncio
    async def test_single_phrase_is_not_enough(self, session):
        make_fp(session, key_phrases=["carbon-neutral fleet", "2030 target"])
        result = await MatchingCascade().match(
            session, ORG, make_candidate("Only the carbon-neutral fleet is mentioned."),
        )
        assert isinstance(result, NoMatch)
        assert result.reason == "no_sufficient_match"

    @pytest.mark.asyncio
    async def test_first_fingerprint_in_id_order_wins(self, session):
        first = make_fp(session, key_phrases=["alpha", "beta"], campaign_id="c-1")
        make_fp(session, key_phrases=["alpha", "beta", "gamma"], campaign_id="c-2")
        result = await MatchingCascade().match(session, ORG, make_candidate("alpha beta gamma"))
        assert result.fingerprint.id == first.id


# ---------------------------------------------------------------------------
# Stage 2: semantic
# ---------------------------------------------------------------------------


class TestSemantic:
    @pytest.mark.asyncio
    async def test_accepts_recent_similar_content(self, session):
        now = utc_now()
        fp = make_fp(session, key_phrases=["unrelated"], embedding=[1.0, 0.0, 0.0],
                     exported_at=now - timedelta(days=5))
        embedder = FakeEmbedder([0.9, 0.1, 0.0])
        result = await MatchingCascade(embedder).match(
            session, ORG, make_candidate("similar framing", published_at=now),
        )
        assert isinstance(result, MatchResult)
        assert result.fingerprint.id == fp.id
        assert result.match_type == "semantic"
        assert result.confidence == pytest.approx(0.9939, abs=1e-3)
        assert result.details["days_since_export"] == pytest.approx(5.0, abs=0.1)

    @pytest.mark.asyncio
    async def test_stale_match_falls_through_to_contextual(self, session):
        now = utc_now()
        fp = make_fp(session, embedding=[1.0, 0.0, 0.0], exported_at=now - timedelta(days=40))
        classifier = FakeClassifier({fp.id: ClassifierJudgment(True, 0.8, "same angle", ["angle"])})
        result = await MatchingCascade(FakeEmbedder([1.0, 0.0, 0.0]), classifier).match(
            session, ORG, make_candidate("text", published_at=now),
        )
        assert result.match_type == "contextual"
        assert classifier.seen == [fp.id]

    @pytest.mark.asyncio
    async def test_stale_match_without_classifier_is_no_match(self, session):
        now = utc_now()
        make_fp(session, embedding=[1.0, 0.0, 0.0], exported_at=now - timedelta(days=31))
        result = await MatchingCascade(FakeEmbedder([1.0, 0.0, 0.0])).match(
            session, ORG, make_candidate("text", published_at=now),
        )
        assert isinstance(result, NoMatch)
        assert result.reason == "no_sufficient_match"

    @pytest.mark.asyncio
    async def test_below_threshold(self, session):
        make_fp(session, embedding=[1.0, 0.0, 0.0])
        result = await MatchingCascade(FakeEmbedder([0.0, 1.0, 0.0])).match(
            session, ORG, make_candidate("text"),
        )
        assert isinstance(result, NoMatch)

    @pytest.mark.asyncio
    async def test_best_of_top_three(self, session):
        now = utc_now()
        make_fp(session, embedding=[0.8, 0.6, 0.0], exported_at=now, campaign_id="c-1")
        best = make_fp(session, embedding=[1.0, 0.0, 0.0], exported_at=now, campaign_id="c-2")
        result = await MatchingCascade(FakeEmbedder([1.0, 0.0, 0.0])).match(
            session, ORG, make_candidate("text", published_at=now),
        )
        assert result.fingerprint.id == best.id
        assert len(result.details["alternatives"]) == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades(self, session):
        make_fp(session, embedding=[1.0, 0.0, 0.0])
        embedder = FakeEmbedder(error=RuntimeError("gateway down"))
        result = await MatchingCascade(embedder).match(session, ORG, make_candidate("text"))
        assert isinstance(result, NoMatch)
        assert result.reason == "no_sufficient_match"
        assert embedder.calls == 1

    @pytest.mark.asyncio
    async def test_fingerprints_without_embedding_skipped(self, session):
        make_fp(session)
        result = await MatchingCascade(FakeEmbedder()).match(session, ORG, make_candidate("text"))
        assert isinstance(result, NoMatch)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        None,
        [],
        [float("nan")] * 3,
        [1.0, float("inf"), 0.0],
        ["x", "y", "z"],
        [[1.0, 0.0, 0.0]],
    ])
    async def test_malformed_vector_degrades(self, session, payload):
        make_fp(session, embedding=[1.0, 0.0, 0.0], exported_at=utc_now())
        result = await MatchingCascade(RawVectorEmbedder(payload)).match(
            session, ORG, make_candidate("text", published_at=utc_now()),
        )
        assert isinstance(result, NoMatch)
        assert result.reason == "no_sufficient_match"

    @pytest.mark.asyncio
    async def test_malformed_vector_reported_as_no_match(self, session):
        make_fp(session, embedding=[1.0, 0.0, 0.0], exported_at=utc_now())
        body = await check_attribution(
            session, ORG, make_candidate("text", published_at=utc_now()),
            Gateways(embedder=RawVectorEmbedder([float("nan")] * 3), timeout=1.0),
        )
        assert body == {"match": False, "reason": "no_sufficient_match"}


# ---------------------------------------------------------------------------
# Stage 3: contextual
# ---------------------------------------------------------------------------


class TestContextual:
    @pytest.mark.asyncio
    async def test_load_order_beats_completion_order(self, session):
        fps = [make_fp(session, campaign_id=f"c-{i}") for i in range(3)]
        classifier = FakeClassifier(
            judgments={
                fps[0].id: ClassifierJudgment(True, 0.5, "weak", []),
                fps[1].id: ClassifierJudgment(True, 0.8, "slow but first", ["angle"]),
                fps[2].id: ClassifierJudgment(True, 0.95, "fast", []),
            },
            delays={fps[1].id: 0.05},
        )
        result = await MatchingCascade(classifier=classifier).match(session, ORG, make_candidate("text"))
        assert result.fingerprint.id == fps[1].id
        assert result.match_type == "contextual"
        assert result.confidence == 0.8
        assert result.details["reasoning"] == "slow but first"
        assert result.details["matched_elements"] == ["angle"]

    @pytest.mark.asyncio
    async def test_only_first_five_fingerprints_considered(self, session):
        fps = [make_fp(session, campaign_id=f"c-{i}") for i in range(7)]
        classifier = FakeClassifier({fps[6].id: ClassifierJudgment(True, 0.99, "", [])})
        result = await MatchingCascade(classifier=classifier).match(session, ORG, make_candidate("text"))
        assert isinstance(result, NoMatch)
        assert sorted(classifier.seen) == [fp.id for fp in fps[:5]]

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, session):
        fp = make_fp(session)
        classifier = FakeClassifier({fp.id: ClassifierJudgment(True, 0.65, "", [])})
        result = await MatchingCascade(classifier=classifier).match(session, ORG, make_candidate("text"))
        assert isinstance(result, NoMatch)

    @pytest.mark.asyncio
    async def test_confident_non_match_rejected(self, session):
        fp = make_fp(session)
        classifier = FakeClassifier({fp.id: ClassifierJudgment(False, 0.9, "different story", [])})
        result = await MatchingCascade(classifier=classifier).match(session, ORG, make_candidate("text"))
        assert isinstance(result, NoMatch)

    @pytest.mark.asyncio
    async def test_classifier_error_is_non_match_for_that_fingerprint(self, session):
        first = make_fp(session, campaign_id="c-1")
        second = make_fp(session, campaign_id="c-2")
        classifier = FakeClassifier(
            judgments={second.id: ClassifierJudgment(True, 0.7, "", [])},
            errors={first.id: RuntimeError("rate limited")},
        )
        result = await MatchingCascade(classifier=classifier).match(session, ORG, make_candidate("text"))
        assert result.fingerprint.id == second.id

    @pytest.mark.asyncio
    async def test_classifier_timeout(self, session):
        fp = make_fp(session)
        classifier = FakeClassifier(
            judgments={fp.id: ClassifierJudgment(True, 0.99, "", [])}, delays={fp.id: 1.0},
        )
        matcher = ContextualMatcher(classifier, timeout=0.01)
        assert await matcher.attempt(make_candidate("text"), [fp]) is None


# ---------------------------------------------------------------------------
# Gateway helpers
# ---------------------------------------------------------------------------


class TestParseJudgment:
    def test_valid(self):
        j = parse_judgment({"is_match": True, "confidence": 0.7, "reasoning": "r", "matched_elements": ["a"]})
        assert j.is_match is True
        assert j.confidence == 0.7
        assert j.matched_elements == ["a"]

    def test_garbage_confidence(self):
        j = parse_judgment({"is_match": True, "confidence": "very"})
        assert j.is_match is False
        assert j.confidence == 0.0

    def test_not_a_dict(self):
        assert parse_judgment(["nope"]).confidence == 0.0

    def test_confidence_clamped(self):
        assert parse_judgment({"is_match": True, "confidence": 3}).confidence == 1.0


class TestClassifierDossier:
    def test_contains_campaign_and_candidate(self, session):
        fp = make_fp(
            session, key_phrases=["green hydrogen"], unique_angles=["first mover in Bavaria"],
            expected_channels=["trade press"], content_type="press_release",
        )
        dossier = build_classifier_dossier(fp, make_candidate("x" * 3000, source_outlet="Handelsblatt"))
        assert "CONTENT TYPE: press_release" in dossier
        assert "UNIQUE ANGLES: first mover in Bavaria" in dossier
        assert "KEY PHRASES: green hydrogen" in dossier
        assert "EXPECTED CHANNELS: trade press" in dossier
        assert "SOURCE: Handelsblatt" in dossier
        assert "x" * 1501 not in dossier


class TestTopKSimilar:
    def test_orders_and_thresholds(self):
        hits = top_k_similar(
            [1.0, 0.0], [[0.0, 1.0], [1.0, 0.1], [1.0, 0.0]], [1, 2, 3], top_k=3, threshold=0.5,
        )
        assert [h[0] for h in hits] == [3, 2]

    def test_dimension_mismatch_ignored(self):
        assert top_k_similar([1.0, 0.0], [[1.0, 0.0, 0.0]], [1]) == []

    def test_empty(self):
        assert top_k_similar([1.0], [], []) == []

    def test_non_finite_vector_skipped(self):
        hits = top_k_similar(
            [1.0, 0.0], [[float("nan"), 0.0], [1.0, 0.0]], [1, 2], top_k=3, threshold=0.5,
        )
        assert hits == [(2, 1.0)]


class TestEmbedMissing:
    @pytest.mark.asyncio
    async def test_fills_only_missing(self, session):
        make_fp(session, key_phrases=["alpha"], embedding=[0.0, 1.0, 0.0], campaign_id="c-1")
        bare = make_fp(session, key_phrases=["beta"], unique_angles=["gamma"], campaign_id="c-2")
        make_fp(session, campaign_id="c-3")  # nothing to embed
        embedder = FakeEmbedder([1.0, 0.0, 0.0])

        assert await embed_missing_fingerprints(session, ORG, embedder) == 1
        assert embedder.calls == 1
        assert bare.embedding_json == "[1.0, 0.0, 0.0]"
