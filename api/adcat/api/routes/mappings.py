from fastapi import APIRouter, Depends, HTTPException, Query, status

from adcat.core.auth import CATEGORIES_READ, CATEGORIES_WRITE
from adcat.core.security import get_principal
from adcat.schemas.mappings import (
    MappingSortColumn,
    SortDirection,
    UrlMappingCreateRequest,
    UrlMappingDeleteOut,
    UrlMappingListOut,
    UrlMappingOut,
    UrlMappingUpdateRequest,
    UrlMappingWriteOut,
)
from adcat.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryTransactionError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=UrlMappingListOut)
async def list_url_mappings(
    principal=Depends(get_principal),
    repository=Depends(get_repository),
    search: str | None = Query(default=None),
    sort_by: MappingSortColumn = Query(default="created_at", alias="sortBy"),
    sort_dir: SortDirection = Query(default="desc", alias="sortDir"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> UrlMappingListOut:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows, total = await repository.list_url_mappings(
            search=search,
            sort_by=sort_by,
            sort_dir=sort_dir,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlMappingListOut(mappings=[UrlMappingOut(**row) for row in rows], total=total)


@router.get("/{mapping_id}", response_model=UrlMappingOut)
async def get_url_mapping(
    mapping_id: int,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> UrlMappingOut:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_url_mapping(mapping_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return UrlMappingOut(**row)


@router.post("", response_model=UrlMappingWriteOut, status_code=status.HTTP_201_CREATED)
async def create_url_mapping(
    payload: UrlMappingCreateRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> UrlMappingWriteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.create_url_mapping(url=payload.url, category=payload.category)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlMappingWriteOut(
        mapping=UrlMappingOut(**result["mapping"]),
        staging_rows_updated=result["ads_updated"],
    )


@router.put("/{mapping_id}", response_model=UrlMappingWriteOut)
async def update_url_mapping(
    mapping_id: int,
    payload: UrlMappingUpdateRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> UrlMappingWriteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.update_url_mapping(mapping_id=mapping_id, category=payload.category)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlMappingWriteOut(
        mapping=UrlMappingOut(**result["mapping"]),
        staging_rows_updated=result["ads_updated"],
    )


@router.delete("/{mapping_id}", response_model=UrlMappingDeleteOut)
async def delete_url_mapping(
    mapping_id: int,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> UrlMappingDeleteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.delete_url_mapping(mapping_id=mapping_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlMappingDeleteOut(deleted=result["deleted"], staging_rows_updated=result["ads_updated"])
