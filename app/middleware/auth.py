"""
API Key authentication middleware.

Every organization gets secret API keys (tl_sec_...), used server-side by
the scheduler that triggers attribution and reconciliation runs.

Key rules:
  - Keys are scoped to a single organization; a run for another org is 403
  - Keys are issued out of band and stored hashed (SHA-256); never plaintext
  - Rate limited per key and per job
"""

import hashlib
from dataclasses import dataclass
from uuid import UUID, uuid4

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func, select
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import get_db
from app.models.tables import Base

import structlog

logger = structlog.get_logger()

KEY_PREFIX = "tl_sec_"


# ─── Database model ────────────────────────────────────────────────

class APIKey(Base):
    """Hashed API keys scoped to an organization."""
    __tablename__ = "api_keys"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(PG_UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    key_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256 hex
    key_prefix = Column(String(12), nullable=False)  # e.g. "tl_sec_a3f8" for identification
    name = Column(String(255), nullable=True)  # human label ("Scheduler", "Staging")
    is_active = Column(Boolean, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ─── Key hashing ───────────────────────────────────────────────────

def hash_key(raw_key: str) -> str:
    """SHA-256 hash of the raw API key. Only the hash is stored."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


# ─── Auth dependencies ─────────────────────────────────────────────

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class AuthContext:
    """Resolved authentication context for the current request."""
    organization_id: UUID
    key_id: UUID


async def _resolve_key(raw_key: str | None, db: AsyncSession) -> AuthContext:
    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not raw_key.startswith(KEY_PREFIX):
        raise HTTPException(
            status_code=401,
            detail=f"Invalid API key. Secret keys start with {KEY_PREFIX}.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    stmt = select(APIKey).where(
        APIKey.key_hash == hash_key(raw_key),
        APIKey.is_active == True,
    )
    result = await db.execute(stmt)
    api_key = result.scalar_one_or_none()

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    api_key.last_used_at = func.now()
    await db.commit()

    return AuthContext(organization_id=api_key.organization_id, key_id=api_key.id)


async def require_secret_key(
    api_key: str | None = Security(api_key_header),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Require a valid secret API key."""
    return await _resolve_key(api_key, db)


def enforce_org_scope(auth: AuthContext, organization_id: UUID):
    """Verify the requested org matches the API key's org.
    Prevents cross-org runs."""
    if auth.organization_id != organization_id:
        logger.warning(
            "org_scope_denied",
            key_id=str(auth.key_id),
            requested_org=str(organization_id),
        )
        raise HTTPException(
            status_code=403,
            detail="API key does not have access to this organization.",
        )
