from __future__ import annotations
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .affected import locate_affected_work
from .candidates import rank_candidates
from .config import ReassignmentSettings
from .errors import NotFoundError
from .execute import execute_reassignment
from .history import build_reassignment_output, get_history
from .impact import compute_impact
from .models import (
    AffectedRoute,
    CandidateDriver,
    ExecuteRequest,
    ExecutionResult,
    HistoryEntry,
    ImpactReport,
    ImpactRequest,
    OptionsRequest,
    ReassignmentOption,
    ReassignmentOutput,
    ReassignmentStrategy,
)
from .options import generate_options


def create_router(
    get_db: Callable[[], Iterator[Session]],
    get_settings: Callable[[], ReassignmentSettings],
) -> APIRouter:
    """
    Factory that returns the /reassignment router. ``get_db`` is a FastAPI
    dependency yielding a session; ``get_settings`` returns the effective
    engine settings.

    Handlers are plain ``def`` so they run in the worker pool: once an
    execution starts it finishes even if the client goes away.
    """
    router = APIRouter(prefix="/reassignment", tags=["Reassignment"])

    # ------------------- Shared Helpers -------------------

    def company_id(x_company_id: Optional[str] = Header(None)) -> str:
        if not x_company_id:
            raise HTTPException(status_code=401, detail="Missing x-company-id header")
        return x_company_id

    def actor_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
        return x_user_id or None

    def not_found(exc: NotFoundError) -> HTTPException:
        return HTTPException(status_code=404, detail=str(exc))

    # ------------------- Endpoints -------------------

    @router.get("/affected", response_model=List[AffectedRoute])
    def affected(
        driver_id: str = Query(..., min_length=1),
        job_id: Optional[str] = None,
        tenant: str = Depends(company_id),
        db: Session = Depends(get_db),
    ):
        try:
            return locate_affected_work(db, tenant, driver_id, job_id)
        except NotFoundError as e:
            raise not_found(e)

    @router.get("/candidates", response_model=List[CandidateDriver])
    def candidates(
        driver_id: str = Query(..., min_length=1),
        strategy: ReassignmentStrategy = ReassignmentStrategy.SAME_FLEET,
        job_id: Optional[str] = None,
        limit: Optional[int] = Query(None, ge=1, le=20),
        tenant: str = Depends(company_id),
        db: Session = Depends(get_db),
    ):
        limit = limit or get_settings().default_candidate_limit
        try:
            return rank_candidates(db, tenant, driver_id, strategy, job_id, limit=limit)
        except NotFoundError as e:
            raise not_found(e)

    @router.post("/impact", response_model=ImpactReport)
    def impact(
        req: ImpactRequest,
        tenant: str = Depends(company_id),
        db: Session = Depends(get_db),
    ):
        try:
            return compute_impact(
                db, tenant, req.absent_driver_id, req.replacement_driver_id, req.job_id,
                settings=get_settings(),
            )
        except NotFoundError as e:
            raise not_found(e)

    @router.post("/options", response_model=List[ReassignmentOption])
    def options(
        req: OptionsRequest,
        tenant: str = Depends(company_id),
        db: Session = Depends(get_db),
    ):
        try:
            return generate_options(
                db, tenant, req.absent_driver_id, req.strategy, req.job_id, req.limit,
                settings=get_settings(),
            )
        except NotFoundError as e:
            raise not_found(e)

    @router.post("/execute", response_model=ExecutionResult)
    def execute(
        req: ExecuteRequest,
        tenant: str = Depends(company_id),
        actor: Optional[str] = Depends(actor_id),
        db: Session = Depends(get_db),
    ):
        result = execute_reassignment(
            db, tenant, req.absent_driver_id, req.reassignments,
            reason=req.reason, actor_id=actor, job_id=req.job_id,
            settings=get_settings(),
        )
        if not result.success:
            return JSONResponse(status_code=400, content=result.model_dump(mode="json"))
        return result

    @router.get("/history", response_model=List[HistoryEntry])
    def history(
        job_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
        tenant: str = Depends(company_id),
        db: Session = Depends(get_db),
    ):
        return get_history(db, tenant, job_id=job_id, driver_id=driver_id, limit=limit, offset=offset)

    @router.get("/output/{history_id}", response_model=ReassignmentOutput)
    def output(
        history_id: str,
        tenant: str = Depends(company_id),
        actor: Optional[str] = Depends(actor_id),
        db: Session = Depends(get_db),
    ):
        """Regenerate the route sheets for the drivers of one past execution."""
        try:
            return build_reassignment_output(db, tenant, history_id, generated_by=actor)
        except NotFoundError as e:
            raise not_found(e)

    @router.get("/settings")
    def settings() -> Dict[str, Any]:
        return get_settings().as_dict()

    return router
