"""
Router for Shadow IT reconciliation operations.
Provides endpoints to:
- Run reconciliation for one or all organizations (dry-run by default)
- Merge duplicate applications
- Score scope sets and composite risk
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from src.shadow_it_sync.sync.engine import ReconciliationService
from src.shadow_it_sync.sync.risk import (
    CategoryWeights,
    compute_composite_score,
    compute_risk_level,
    normalize_risk_level,
)
from src.utils.error_handling import BaseError, NotFound, RunInProgressError, format_error_for_response
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/shadow-it", tags=["shadow-it"])


class ReconciliationRequest(BaseModel):
    organization_id: int
    dry_run: bool = True


class ReconciliationAllRequest(BaseModel):
    organization_ids: Optional[List[int]] = None
    dry_run: bool = True


class DeduplicationRequest(BaseModel):
    organization_id: int


class RiskLevelRequest(BaseModel):
    scopes: List[str] = Field(default_factory=list)


class RiskLevelResponse(BaseModel):
    level: str
    permissionCount: int


class CompositeScoreRequest(BaseModel):
    category_averages: Dict[str, Optional[float]]
    ai_status: Optional[str] = None
    scope_risk: Optional[str] = None
    weights: Optional[CategoryWeights] = None
    # Scores with the organization's stored weights and multipliers
    organization_id: Optional[int] = None


class CompositeScoreResponse(BaseModel):
    score: float
    scope_risk: str


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation_service


@router.post("/reconciliation/run")
async def run_reconciliation(
    body: ReconciliationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> Dict[str, Any]:
    """Reconcile one organization. A second live run for the same organization gets 409."""
    try:
        result = await service.run_reconciliation(body.organization_id, dry_run=body.dry_run)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return result.to_dict()


@router.post("/reconciliation/run-all")
async def run_reconciliation_all(
    body: ReconciliationAllRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> Dict[str, Any]:
    return await service.run_for_organizations(body.organization_ids, dry_run=body.dry_run)


@router.post("/deduplication/run")
async def run_deduplication(
    body: DeduplicationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> Dict[str, Any]:
    try:
        return await service.run_deduplication(body.organization_id)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except BaseError as e:
        e.log(logger)
        raise HTTPException(status_code=500, detail=format_error_for_response(e))


@router.post("/risk/level", response_model=RiskLevelResponse)
async def risk_level(body: RiskLevelRequest) -> Dict[str, Any]:
    return compute_risk_level(body.scopes).to_dict()


@router.post("/risk/composite", response_model=CompositeScoreResponse)
async def composite_score(
    body: CompositeScoreRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> Dict[str, Any]:
    config = None
    if body.organization_id is not None:
        if isinstance(await service.db.get_organization(body.organization_id), NotFound):
            raise HTTPException(status_code=404, detail=f"Organization {body.organization_id} not found")
        try:
            config = await service.db.get_scoring_config(body.organization_id)
        except ValueError as e:
            logger.error(f"Invalid scoring configuration for organization {body.organization_id}: {e}")
            raise HTTPException(status_code=500, detail="Stored scoring configuration is invalid")

    try:
        scope_risk = normalize_risk_level(body.scope_risk)
        score = compute_composite_score(
            body.category_averages,
            body.ai_status,
            scope_risk,
            weights=body.weights,
            config=config,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"score": score, "scope_risk": scope_risk.value}
