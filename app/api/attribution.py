"""
Attribution API: trigger batch attribution runs for one organization.

Security:
  - Requires SECRET API key (tl_sec_...)
  - organization_id in the body must match the key's organization
  - Rate limited per API key and job

Failures:
  - bad parameters          → 422 (schema) / 400 (engine bounds), nothing written
  - transactions unreadable → 502, no partial summary
  - anything else degrades inside the run and shows up in the summary
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.engine import AttributionEngine
from app.core.errors import AttributionInputError, TransactionSourceError
from app.middleware.auth import AuthContext, enforce_org_scope, require_secret_key
from app.middleware.rate_limit import rate_limit_job
from app.models.database import get_db
from app.models.store import AttributionStore

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/attribution", tags=["attribution"])


async def get_store(db: AsyncSession = Depends(get_db)) -> AttributionStore:
    return AttributionStore(db)


class RunRequest(BaseModel):
    organization_id: UUID
    days_back: int | None = Field(None, ge=1, le=365)
    lookback_days: int | None = Field(None, ge=1, le=365)
    batch_size: int | None = Field(None, ge=1, le=500)
    force_recompute: bool = False
    dry_run: bool = False


class RunResponse(BaseModel):
    organization_id: str
    total_transactions: int
    created: int
    skipped: int
    errors: int
    refunds_excluded: int
    by_method: dict[str, int]
    dry_run: bool
    duration_ms: int


class RecomputeRequest(BaseModel):
    organization_id: UUID
    days_back: int | None = Field(None, ge=1, le=365)
    batch_size: int | None = Field(None, ge=1, le=500)
    dry_run: bool = False


class RecomputeResponse(BaseModel):
    organization_id: str
    considered: int
    upgraded: int
    unmatched: int
    errors: int
    dry_run: bool


@router.post("/run", response_model=RunResponse)
async def run_attribution(
    req: RunRequest,
    auth: AuthContext = Depends(require_secret_key),
    store: AttributionStore = Depends(get_store),
):
    enforce_org_scope(auth, req.organization_id)
    rate_limit_job(str(auth.key_id), "attribution_run")

    engine = AttributionEngine(store)
    try:
        summary = await engine.run(
            str(req.organization_id),
            days_back=req.days_back,
            batch_size=req.batch_size,
            force_recompute=req.force_recompute,
            dry_run=req.dry_run,
            lookback_days=req.lookback_days,
        )
    except AttributionInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransactionSourceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return RunResponse(**summary.to_dict())


@router.post("/recompute-organic", response_model=RecomputeResponse)
async def recompute_organic(
    req: RecomputeRequest,
    auth: AuthContext = Depends(require_secret_key),
    store: AttributionStore = Depends(get_store),
):
    """Upgrade organic records by campaign timing. Lower confidence than any direct match."""
    enforce_org_scope(auth, req.organization_id)
    rate_limit_job(str(auth.key_id), "recompute_organic")

    engine = AttributionEngine(store)
    try:
        summary = await engine.recompute_organic(
            str(req.organization_id),
            days_back=req.days_back,
            batch_size=req.batch_size,
            dry_run=req.dry_run,
        )
    except AttributionInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransactionSourceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return RecomputeResponse(**summary.to_dict())
