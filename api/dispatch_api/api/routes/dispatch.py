from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from dispatch_api.core.auth import Principal
from dispatch_api.core.security import get_admin_principal, get_principal
from dispatch_api.schemas.dispatch import (
    AssignmentOut,
    JobViewOut,
    OfferOut,
    OfferRequest,
    ReconcileOut,
    ReconcileRequest,
    RespondRequest,
    SagaOutcomeOut,
    SchemaOut,
)
from dispatch_api.services.assignments import AssignmentResult, ProRef, SagaOutcome
from dispatch_api.services.repository import (
    JobFilter,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from dispatch_api.services.schema import ProbeHints

router = APIRouter()


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _saga_out(outcome: SagaOutcome | None) -> SagaOutcomeOut | None:
    if outcome is None:
        return None
    return SagaOutcomeOut(**outcome.to_dict())


def _assignment_out(result: AssignmentResult) -> AssignmentOut:
    return AssignmentOut(
        job_id=result.job_id,
        state=result.state,
        created=result.created,
        mode=result.mode,
        reopened=result.reopened,
        assignment=result.assignment,
        shape=result.shape,
        job_status=_saga_out(result.job_status),
    )


def _responding_pro(principal: Principal, payload: RespondRequest | None) -> ProRef:
    if principal.is_admin:
        if payload is None or payload.pro is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="admin responses require pro")
        return ProRef(pro_id=payload.pro.pro_id, email=payload.pro.email)
    return ProRef(pro_id=principal.pro_id, email=principal.email)


@router.post("/offers", response_model=OfferOut, status_code=status.HTTP_200_OK)
async def create_offer(
    payload: OfferRequest,
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> OfferOut:
    try:
        principal.require_scopes({"offers:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.ensure_offer(
            payload.job_id,
            ProRef(pro_id=payload.pro.pro_id, email=payload.pro.email),
            payload.state,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return OfferOut(
        job_id=result.job_id,
        status=result.status,
        assignment=result.assignment,
        shape=result.shape,
        job_status=_saga_out(result.job_status),
    )


@router.post("/jobs/{job_id}/accept", response_model=AssignmentOut)
async def accept_job(
    job_id: str,
    payload: RespondRequest | None = Body(default=None),
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
) -> AssignmentOut:
    try:
        principal.require_scopes({"assignments:respond"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.accept(job_id, _responding_pro(principal, payload))
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return _assignment_out(result)


@router.post("/jobs/{job_id}/decline", response_model=AssignmentOut)
async def decline_job(
    job_id: str,
    payload: RespondRequest | None = Body(default=None),
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
) -> AssignmentOut:
    try:
        principal.require_scopes({"assignments:respond"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.decline(job_id, _responding_pro(principal, payload))
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return _assignment_out(result)


@router.get("/jobs", response_model=list[JobViewOut])
async def list_jobs(
    principal: Principal = Depends(get_principal),
    repository=Depends(get_repository),
    job_status: str | None = Query(default=None, alias="status"),
    days: int = Query(default=30),
    pro: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
) -> list[JobViewOut]:
    if not principal.is_admin:
        # Pros only ever see jobs assigned to them.
        pro = principal.pro_id or principal.email

    job_filter = JobFilter.parse(status=job_status, days=days, pro=pro, limit=limit)
    views = await repository.list_enriched_jobs(job_filter)
    return [JobViewOut(**view.to_dict()) for view in views]


@router.get("/schema", response_model=SchemaOut)
async def get_schema(
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
    pro: str | None = Query(default=None),
    job_id: str | None = Query(default=None),
) -> SchemaOut:
    try:
        principal.require_scopes({"schema:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    descriptor = await repository.resolve_schema(ProbeHints(pro_value=pro, job_id=job_id))
    if descriptor is None:
        return SchemaOut(resolved=False)
    return SchemaOut(resolved=True, descriptor=descriptor.to_dict())


@router.post("/reconcile/job-status", response_model=ReconcileOut)
async def reconcile_job_status(
    payload: ReconcileRequest | None = Body(default=None),
    principal: Principal = Depends(get_admin_principal),
    repository=Depends(get_repository),
) -> ReconcileOut:
    try:
        principal.require_scopes({"reconcile:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    payload = payload or ReconcileRequest()
    try:
        report = await repository.reconcile_job_status(limit=payload.limit, dry_run=payload.dry_run)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return ReconcileOut(**report.to_dict())
