"""
Reassignment endpoints.

Staged operations are sent by the operator's review screen; nothing is
written until /commit. Rollback and reconciliation act on the stored
documents directly.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.dependencies import get_engine
from src.reassignment_engine import (
    Actor,
    AllocationRanker,
    Bus,
    BusLoad,
    CommitResult,
    NetChangeResult,
    NotFoundError,
    PreviewResult,
    ReassignmentEngine,
    StagedOperation,
    Student,
    __engine_version__,
)
from src.reassignment_engine.models import (
    AutoSplitResult,
    LogStatus,
    OverloadInfo,
    RankedBus,
    RankingWeights,
    ReassignmentLog,
    ReassignmentType,
    RollbackResult,
    RollbackValidation,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Request/Response Models ---

class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    message: str


class PreviewRequest(BaseModel):
    """Staged operations to preview."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "operations": [
                    {"type": "assign", "entity": "driver", "target_ids": ["drv_1"], "bus_id": "bus_2"},
                    {"type": "swap", "target_ids": ["drv_3", "drv_4"]},
                ]
            }
        }
    )

    operations: list[StagedOperation] = Field(..., description="Operations in staging order")


class CommitRequest(PreviewRequest):
    """Staged operations to commit."""

    actor: Actor
    allow_capacity_override: bool = Field(
        default=False,
        description="Commit even if a bus would exceed capacity",
    )


class CommitResponse(BaseModel):
    """Commit outcome with the net changes it was computed from."""

    result: CommitResult
    net_changes: NetChangeResult


class CandidateRequest(BaseModel):
    """Students leaving a source bus and the buses to consider."""

    students: list[Student] = Field(..., min_length=1)
    buses: list[Bus] = Field(..., description="Candidate buses")
    source_bus: Bus
    threshold: Optional[float] = Field(
        default=None,
        gt=0,
        le=100,
        description="Maximum per-shift load percentage after the move",
    )
    weights: Optional[RankingWeights] = None


class AutoSplitResponse(BaseModel):
    """Auto-split plan and the staged operations that carry it out."""

    result: AutoSplitResult
    operations: list[StagedOperation]


class RollbackRequest(BaseModel):
    actor: Actor


class ReconcileRequest(BaseModel):
    bus_ids: Optional[list[str]] = Field(default=None, description="All buses if omitted")


class ReconcileResponse(BaseModel):
    loads: dict[str, BusLoad]
    overloaded: list[OverloadInfo] = Field(
        default_factory=list,
        description="Reconciled buses still over capacity",
    )


class EngineInfoResponse(BaseModel):
    """Response for engine info endpoint."""

    engine_version: str = Field(description="Reassignment engine version")
    description: str = Field(description="Engine description")


# --- Endpoints ---

@router.get("/info", response_model=EngineInfoResponse)
async def get_engine_info() -> EngineInfoResponse:
    """Get reassignment engine information."""
    return EngineInfoResponse(
        engine_version=__engine_version__,
        description="Campus Transport Reassignment Engine",
    )


@router.post("/preview", response_model=PreviewResult)
async def preview(
    request: PreviewRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> PreviewResult:
    """
    Compute net changes and validate them.

    Returns the minimal change set, operations that cancelled out,
    route impacts, review rows and the validation report.
    """
    logger.info("Previewing staged operations | engine=%s count=%d",
                __engine_version__, len(request.operations))
    try:
        return await engine.preview(request.operations)
    except ValueError as e:
        logger.error("Preview validation error: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "validation_error", "message": str(e)},
        )
    except Exception as e:
        logger.exception("Preview error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "preview_error", "message": str(e)},
        )


@router.post(
    "/commit",
    response_model=CommitResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Data changed since preview"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
)
async def commit(
    request: CommitRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> CommitResponse:
    """Commit staged operations atomically and record them in the audit log."""
    logger.info("Committing staged operations | actor=%s count=%d",
                request.actor.id, len(request.operations))

    try:
        net_changes, result = await engine.commit_staged(
            request.operations,
            request.actor,
            allow_capacity_override=request.allow_capacity_override,
        )
    except Exception as e:
        logger.exception("Commit error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "commit_error", "message": str(e)},
        )

    if result.conflicts:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "conflict",
                "message": result.message,
                "conflicts": [c.model_dump(mode="json") for c in result.conflicts],
            },
        )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "validation_error",
                "message": result.message,
                "errors": [e.model_dump(mode="json") for e in result.errors],
            },
        )

    logger.info("Commit complete | operation=%s status=%s changes=%d",
                result.operation_id, result.status.value, len(net_changes.changes))
    return CommitResponse(result=result, net_changes=net_changes)


@router.post("/rank", response_model=list[RankedBus])
async def rank(
    request: CandidateRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> list[RankedBus]:
    """Score every candidate bus for the students, best first."""
    if request.weights is not None:
        ranker = AllocationRanker(request.weights, engine.config.overload_ratio)
        return ranker.rank_buses(request.buses, request.students, request.source_bus)
    return engine.rank_candidates(request.students, request.buses, request.source_bus)


@router.post("/suggest", response_model=list[RankedBus])
async def suggest(
    request: CandidateRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> list[RankedBus]:
    """Buses that can take the whole group, best first."""
    return engine.suggest_candidates(
        request.students, request.buses, request.source_bus, request.threshold
    )


@router.post("/auto-split", response_model=AutoSplitResponse)
async def split(
    request: CandidateRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> AutoSplitResponse:
    """Distribute the students over several buses."""
    result = engine.auto_split(
        request.students, request.buses, request.source_bus, request.threshold
    )
    return AutoSplitResponse(result=result, operations=result.to_staged_operations())


@router.get("/logs", response_model=list[ReassignmentLog])
async def list_logs(
    log_type: Optional[ReassignmentType] = Query(default=None, alias="type"),
    status_filter: Optional[LogStatus] = Query(default=None, alias="status"),
    actor_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    engine: ReassignmentEngine = Depends(get_engine),
) -> list[ReassignmentLog]:
    """List audit logs, newest first."""
    return await engine.logs(log_type, status_filter, actor_id, limit, offset)


@router.get(
    "/logs/{operation_id}",
    response_model=ReassignmentLog,
    responses={404: {"model": ErrorResponse, "description": "Unknown operation"}},
)
async def get_log(
    operation_id: str,
    engine: ReassignmentEngine = Depends(get_engine),
) -> ReassignmentLog:
    log = await engine.get_log(operation_id)
    if log is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Operation {operation_id} not found"},
        )
    return log


@router.get(
    "/logs/{operation_id}/rollback",
    response_model=RollbackValidation,
    responses={404: {"model": ErrorResponse, "description": "Unknown operation"}},
)
async def validate_rollback(
    operation_id: str,
    engine: ReassignmentEngine = Depends(get_engine),
) -> RollbackValidation:
    """Check whether an operation can still be rolled back."""
    try:
        return await engine.validate_rollback(operation_id)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": str(e)},
        )


@router.post(
    "/logs/{operation_id}/rollback",
    response_model=RollbackResult,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown operation"},
        409: {"model": ErrorResponse, "description": "Rollback blocked or partial"},
    },
)
async def rollback(
    operation_id: str,
    request: RollbackRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> RollbackResult:
    """Restore the documents an operation changed."""
    logger.info("Rolling back | operation=%s actor=%s", operation_id, request.actor.id)
    try:
        result = await engine.rollback(operation_id, request.actor)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": str(e)},
        )

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "rollback_failed",
                "message": result.message,
                "conflicts": result.conflicts,
                "reverted_docs": result.reverted_docs,
                "unreverted_docs": result.unreverted_docs,
            },
        )
    return result


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_loads(
    request: ReconcileRequest,
    engine: ReassignmentEngine = Depends(get_engine),
) -> ReconcileResponse:
    """Recount bus loads from active students."""
    loads = await engine.reconcile(request.bus_ids)
    return ReconcileResponse(loads=loads, overloaded=await engine.overloaded(list(loads)))
