"""Admin API endpoints for rate limit violations."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from ratewarden.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    StoreUnavailableError,
)
from ratewarden.core.identity import state_role_resolver
from ratewarden.core.limits import LimitStoreUnavailable, Role, ViolationRecord
from ratewarden.core.limits.engine import DecisionEngine
from ratewarden.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api/admin/rate-limits", tags=["admin"])


class ViolationRecordResponse(BaseModel):
    """Violation record of one principal. Timestamps are epoch milliseconds."""

    identity: str
    count: int
    first_violation: Optional[int]
    last_violation: Optional[int]
    blocked: bool
    blocked_until: Optional[int]

    @classmethod
    def from_record(cls, record: ViolationRecord) -> "ViolationRecordResponse":
        return cls(**record.to_dict())


class ViolationStatsResponse(BaseModel):
    total: int
    active_blocks: int
    high_violators: int


class ViolationListResponse(BaseModel):
    """Dashboard listing, highest violation count first."""

    violations: List[ViolationRecordResponse]
    stats: ViolationStatsResponse


class ResetRequest(BaseModel):
    """Reset request."""

    identifier: str = Field(min_length=1, max_length=256)


class ResetResponse(BaseModel):
    identifier: str
    reset: bool = True
    had_violations: bool


async def require_admin(request: Request) -> Optional[str]:
    """Require the ADMIN role. Returns the admin's user id."""
    resolver = getattr(request.app.state, "role_resolver", None) or state_role_resolver
    role, user_id = await resolver(request)
    if role is None or role is Role.UNAUTHENTICATED:
        raise AuthenticationError()
    if role is not Role.ADMIN:
        raise AuthorizationError("Admin role required")
    return user_id


def get_decision_engine(request: Request) -> DecisionEngine:
    engine = getattr(request.app.state, "decision_engine", None)
    if engine is None:
        raise StoreUnavailableError("Rate limiter not initialized")
    return engine


@router.get("", response_model=ViolationListResponse)
@router.get("/", response_model=ViolationListResponse, include_in_schema=False)
async def list_violations(
    engine: DecisionEngine = Depends(get_decision_engine),
    admin_id: Optional[str] = Depends(require_admin),
):
    """List every live violation record with summary stats (admin only)."""
    try:
        summary = await engine.list_violations()
    except LimitStoreUnavailable as exc:
        logger.error("Violation listing failed", data={"error": str(exc)})
        raise StoreUnavailableError() from exc

    return ViolationListResponse(
        violations=[ViolationRecordResponse.from_record(r) for r in summary.records],
        stats=ViolationStatsResponse(
            total=summary.total,
            active_blocks=summary.active_blocks,
            high_violators=summary.high_violators,
        ),
    )


@router.post("/reset", response_model=ResetResponse)
async def reset_violations_body(
    body: ResetRequest,
    engine: DecisionEngine = Depends(get_decision_engine),
    admin_id: Optional[str] = Depends(require_admin),
):
    """Reset a principal's violations and windows (admin only)."""
    return await _reset(engine, body.identifier, admin_id)


@router.get("/{identifier}", response_model=ViolationRecordResponse)
async def get_violation(
    identifier: str,
    engine: DecisionEngine = Depends(get_decision_engine),
    admin_id: Optional[str] = Depends(require_admin),
):
    """Get the violation record of one principal (admin only)."""
    try:
        record = await engine.get_violation_stats(identifier)
    except LimitStoreUnavailable as exc:
        raise StoreUnavailableError() from exc
    if record is None:
        raise NotFoundError("No violations recorded for identifier")
    return ViolationRecordResponse.from_record(record)


@router.delete("/{identifier}", response_model=ResetResponse)
async def reset_violations(
    identifier: str,
    engine: DecisionEngine = Depends(get_decision_engine),
    admin_id: Optional[str] = Depends(require_admin),
):
    """Reset a principal's violations and windows (admin only)."""
    return await _reset(engine, identifier, admin_id)


async def _reset(engine: DecisionEngine, identifier: str, admin_id: Optional[str]) -> ResetResponse:
    try:
        existed = await engine.reset(identifier)
    except LimitStoreUnavailable as exc:
        logger.error("Violation reset failed", data={"identifier": identifier, "error": str(exc)})
        raise StoreUnavailableError() from exc

    logger.info(
        "Admin reset rate limit state",
        data={"identifier": identifier, "admin_id": admin_id, "had_violations": existed},
    )
    return ResetResponse(identifier=identifier, had_violations=existed)
