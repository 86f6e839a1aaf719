"""
Reconciliation API: rebuild the lookups the attribution run depends on.

  POST /v1/reconciliation/refcodes         → refcode mappings + history
  POST /v1/reconciliation/identity-links   → email ↔ phone identity index
  POST /v1/reconciliation/click-backfill   → registry keys for truncated click ids

Same auth and scoping rules as the attribution API.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from app.api.attribution import get_store
from app.config import get_settings
from app.core.reconciliation import backfill_click_codes, rebuild_identity_links, reconcile_refcodes
from app.middleware.auth import AuthContext, enforce_org_scope, require_secret_key
from app.middleware.rate_limit import rate_limit_job
from app.models.store import AttributionStore

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/reconciliation", tags=["reconciliation"])


class RefcodeRequest(BaseModel):
    organization_id: UUID
    window_days: int | None = Field(None, ge=1, le=90)


class IdentityRequest(BaseModel):
    organization_id: UUID
    days_back: int | None = Field(None, ge=1, le=365)


class ClickBackfillRequest(BaseModel):
    organization_id: UUID
    limit: int | None = Field(None, ge=1, le=5000)
    window_minutes: int | None = Field(None, ge=1, le=1440)
    dry_run: bool = False


def _store_failure(job: str, organization_id: UUID, e: Exception) -> HTTPException:
    logger.error("reconciliation_failed", job=job, organization_id=str(organization_id), error=str(e))
    return HTTPException(status_code=502, detail=f"{job} failed: storage unavailable.")


@router.post("/refcodes")
async def reconcile_refcode_registry(
    req: RefcodeRequest,
    auth: AuthContext = Depends(require_secret_key),
    store: AttributionStore = Depends(get_store),
):
    enforce_org_scope(auth, req.organization_id)
    rate_limit_job(str(auth.key_id), "refcode_reconciliation")

    window_days = req.window_days or get_settings().refcode_active_window_days
    try:
        return await reconcile_refcodes(store, str(req.organization_id), window_days=window_days)
    except SQLAlchemyError as e:
        raise _store_failure("refcode_reconciliation", req.organization_id, e)


@router.post("/identity-links")
async def rebuild_identity_index(
    req: IdentityRequest,
    auth: AuthContext = Depends(require_secret_key),
    store: AttributionStore = Depends(get_store),
):
    enforce_org_scope(auth, req.organization_id)
    rate_limit_job(str(auth.key_id), "identity_rebuild")

    days_back = req.days_back or get_settings().identity_rebuild_days_back
    try:
        return await rebuild_identity_links(store, str(req.organization_id), days_back=days_back)
    except SQLAlchemyError as e:
        raise _store_failure("identity_rebuild", req.organization_id, e)


@router.post("/click-backfill")
async def click_backfill(
    req: ClickBackfillRequest,
    auth: AuthContext = Depends(require_secret_key),
    store: AttributionStore = Depends(get_store),
):
    enforce_org_scope(auth, req.organization_id)
    rate_limit_job(str(auth.key_id), "click_backfill")

    settings = get_settings()
    try:
        return await backfill_click_codes(
            store,
            str(req.organization_id),
            limit=req.limit or settings.click_backfill_limit,
            window_minutes=req.window_minutes or settings.click_backfill_window_minutes,
            dry_run=req.dry_run,
        )
    except SQLAlchemyError as e:
        raise _store_failure("click_backfill", req.organization_id, e)
