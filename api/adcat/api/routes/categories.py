from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from adcat.core.auth import CATEGORIES_READ, CATEGORIES_WRITE
from adcat.core.security import get_principal
from adcat.schemas.categories import (
    CategoryCountOut,
    CategoryMergeOut,
    CategoryMergeRequest,
    NormalizationStatusOut,
)
from adcat.services.normalization import NormalizationState, get_normalization_job
from adcat.services.repository import (
    RepositoryTransactionError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _status_out(state: NormalizationState) -> NormalizationStatusOut:
    return NormalizationStatusOut.model_validate(asdict(state))


@router.get("", response_model=list[str])
async def list_categories(
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> list[str]:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        return await repository.list_categories()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/all", response_model=list[CategoryCountOut])
async def list_category_counts(
    principal=Depends(get_principal),
    repository=Depends(get_repository),
    country: str | None = Query(default=None, min_length=1),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
) -> list[CategoryCountOut]:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if start_date is not None and end_date is not None and end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="endDate must not be before startDate",
        )

    try:
        rows = await repository.list_category_counts(country=country, start_date=start_date, end_date=end_date)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [CategoryCountOut(**row) for row in rows]


@router.post("/merge", response_model=CategoryMergeOut)
@router.post("/rename", response_model=CategoryMergeOut)
async def merge_categories(
    payload: CategoryMergeRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> CategoryMergeOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.merge_categories(
            source_labels=payload.source_labels(),
            target=payload.new_category,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CategoryMergeOut(**result)


@router.post("/normalise", response_model=NormalizationStatusOut, status_code=status.HTTP_202_ACCEPTED)
async def start_normalization(
    response: Response,
    principal=Depends(get_principal),
    job=Depends(get_normalization_job),
) -> NormalizationStatusOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    state, started = job.start()
    if not started:
        response.status_code = status.HTTP_200_OK
    return _status_out(state)


@router.get("/normalise/status", response_model=NormalizationStatusOut)
async def normalization_status(
    principal=Depends(get_principal),
    job=Depends(get_normalization_job),
) -> NormalizationStatusOut:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return _status_out(job.status())
