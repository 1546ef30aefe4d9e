from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from resonance import services
from resonance.config import get_settings
from resonance.db import init_db, session_generator
from resonance.fingerprints import create_fingerprint, list_fingerprints
from resonance.learning import recommend_strategies, register_strategy
from resonance.matching import Candidate
from resonance.outcomes import OutcomeScope
from resonance.schemas import (
    AttributionCheckRequest,
    AttributionCheckResponse,
    AttributionOut,
    FingerprintCreate,
    FingerprintOut,
    OutcomeOut,
    OutcomeRecordRequest,
    OutcomeRecordResponse,
    RecommendationOut,
    StatsOut,
    StrategyOut,
    StrategyRegister,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Resonance",
    version="0.1.0",
    description=(
        "Campaign attribution and outcome memory. Matches external coverage to "
        "seeded campaign content, scores strategy outcomes, and keeps a weighted "
        "graph of what worked. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Attribution", "description": "Match external content to campaign fingerprints."},
        {"name": "Outcomes", "description": "Aggregate attributions into strategy outcomes."},
        {"name": "Fingerprints", "description": "Register and inspect seeded-content fingerprints."},
        {"name": "Strategies", "description": "Strategy memory: salience and recommendations."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def gateways() -> services.Gateways:
    return services.default_gateways()


# ---------------------------------------------------------------------------
# Routes: Attribution
# ---------------------------------------------------------------------------


@app.post("/api/attribution/check", response_model=AttributionCheckResponse,
          response_model_exclude_none=True,
          tags=["Attribution"], summary="Attribute one piece of external content to a campaign fingerprint")
async def check_attribution(
    body: AttributionCheckRequest,
    session: Session = Depends(db_session),
    gw: services.Gateways = Depends(gateways),
):
    candidate = Candidate(
        title=body.title, content=body.content, url=body.url,
        source_type=body.source_type, source_outlet=body.source_outlet,
        published_at=body.published_at, estimated_reach=body.estimated_reach,
    )
    result = await services.check_attribution(session, body.organization_id, candidate, gw)
    if result.get("reason") == "error":
        return JSONResponse(status_code=500, content=result)
    return result


@app.get("/api/attributions", response_model=list[AttributionOut],
         tags=["Attribution"], summary="List recorded attributions, newest first")
async def list_attributions(
    organization_id: str,
    campaign_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    return services.list_attributions(session, organization_id, campaign_id, limit)


# ---------------------------------------------------------------------------
# Routes: Outcomes
# ---------------------------------------------------------------------------


@app.post("/api/outcomes/record", response_model=OutcomeRecordResponse,
          response_model_exclude_none=True,
          tags=["Outcomes"], summary="Compute and store a strategy outcome from its attributions")
async def record_outcome(
    body: OutcomeRecordRequest,
    session: Session = Depends(db_session),
    gw: services.Gateways = Depends(gateways),
):
    scope = OutcomeScope(campaign_id=body.campaign_id, strategy_id=body.strategy_id, content_id=body.content_id)
    result = await services.run_outcome_recording(session, body.organization_id, scope, gw)
    if not result["success"]:
        return JSONResponse(status_code=500, content=result)
    return result


@app.get("/api/outcomes", response_model=list[OutcomeOut],
         tags=["Outcomes"], summary="List recorded outcomes, newest first")
async def list_outcomes(
    organization_id: str,
    strategy_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    return services.list_outcomes(session, organization_id, strategy_id, limit)


# ---------------------------------------------------------------------------
# Routes: Fingerprints
# ---------------------------------------------------------------------------


@app.post("/api/fingerprints", response_model=FingerprintOut, status_code=201,
          tags=["Fingerprints"], summary="Register a fingerprint for exported campaign content")
async def create_fingerprint_route(body: FingerprintCreate, session: Session = Depends(db_session)):
    try:
        fp = create_fingerprint(session, **body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.fingerprint_dict(fp)


@app.get("/api/fingerprints", response_model=list[FingerprintOut],
         tags=["Fingerprints"], summary="List fingerprints for an organization")
async def list_fingerprints_route(
    organization_id: str,
    campaign_id: str | None = Query(None),
    session: Session = Depends(db_session),
):
    return [services.fingerprint_dict(fp) for fp in list_fingerprints(session, organization_id, campaign_id)]


# ---------------------------------------------------------------------------
# Routes: Strategies
# ---------------------------------------------------------------------------


@app.post("/api/strategies", response_model=StrategyOut, status_code=201,
          tags=["Strategies"], summary="Register or refresh a strategy's retrievable representation")
async def register_strategy_route(body: StrategyRegister, session: Session = Depends(db_session)):
    row = register_strategy(
        session, body.organization_id, body.strategy_id,
        content_summary=body.content_summary, embedding=body.embedding,
        baseline_salience=get_settings().salience_baseline,
    )
    session.commit()
    return services.strategy_dict(row)


@app.get("/api/strategies/recommendations", response_model=list[RecommendationOut],
         tags=["Strategies"], summary="Rank strategies that worked, optionally from one strategy's waypoints")
async def recommendations(
    organization_id: str,
    from_strategy_id: str | None = Query(None),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(db_session),
):
    return recommend_strategies(session, organization_id, from_strategy_id, limit)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Counts of fingerprints, attributions, outcomes and waypoints")
async def get_stats(organization_id: str, session: Session = Depends(db_session)):
    return services.compute_stats(session, organization_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    uvicorn.run("resonance.app:app", host=settings.host, port=settings.port, reload=True)


if __name__ == "__main__":
    main()
