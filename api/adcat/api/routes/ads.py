from fastapi import APIRouter, Depends, HTTPException, status

from adcat.core.auth import CATEGORIES_WRITE
from adcat.core.security import get_principal
from adcat.schemas.ads import AdCategoryOut, AdCategoryRequest, AdUninterestedOut, AdUninterestedRequest
from adcat.services.repository import (
    RepositoryConflictError,
    RepositoryTransactionError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.put("/category", response_model=AdCategoryOut)
async def categorize_ad(
    payload: AdCategoryRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> AdCategoryOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.categorize_ad(
            landing_page=payload.landing_page,
            category=payload.category,
            title=payload.title,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdCategoryOut(**result)


@router.post("/uninterested", response_model=AdUninterestedOut)
async def mark_uninteresting(
    payload: AdUninterestedRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> AdUninterestedOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.mark_uninteresting(landing_page=payload.landing_page, title=payload.title)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdUninterestedOut(**result)
