from fastapi import APIRouter, Depends, HTTPException, Query, status

from adcat.core.auth import CATEGORIES_READ, CATEGORIES_WRITE
from adcat.core.security import get_principal
from adcat.schemas.mappings import SortDirection
from adcat.schemas.title_mappings import (
    TitleMappingConflictOut,
    TitleMappingConflictResolveRequest,
    TitleMappingCreateRequest,
    TitleMappingDeleteOut,
    TitleMappingListOut,
    TitleMappingOut,
    TitleMappingSortColumn,
    TitleMappingUpdateRequest,
    TitleMappingWriteOut,
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


@router.get("/conflicts", response_model=list[TitleMappingConflictOut])
async def list_title_mapping_conflicts(
    principal=Depends(get_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[TitleMappingConflictOut]:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_title_mapping_conflicts(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [TitleMappingConflictOut(**row) for row in rows]


@router.post("/conflicts/resolve", response_model=TitleMappingWriteOut)
async def resolve_title_mapping_conflict(
    payload: TitleMappingConflictResolveRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> TitleMappingWriteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.resolve_title_mapping_conflict(
            title_mapping_id=payload.title_mapping_id,
            category=payload.category,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TitleMappingWriteOut(
        title_mapping=TitleMappingOut(**result["mapping"]),
        ads_updated=result["ads_updated"],
    )


@router.get("", response_model=TitleMappingListOut)
async def list_title_mappings(
    principal=Depends(get_principal),
    repository=Depends(get_repository),
    search: str | None = Query(default=None),
    sort_by: TitleMappingSortColumn = Query(default="created_at", alias="sortBy"),
    sort_dir: SortDirection = Query(default="desc", alias="sortDir"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> TitleMappingListOut:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows, total = await repository.list_title_mappings(
            search=search,
            sort_by=sort_by,
            sort_dir=sort_dir,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TitleMappingListOut(title_mappings=[TitleMappingOut(**row) for row in rows], total=total)


@router.get("/{mapping_id}", response_model=TitleMappingOut)
async def get_title_mapping(
    mapping_id: int,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> TitleMappingOut:
    try:
        principal.require_scopes({CATEGORIES_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_title_mapping(mapping_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return TitleMappingOut(**row)


@router.post("", response_model=TitleMappingWriteOut, status_code=status.HTTP_201_CREATED)
async def create_title_mapping(
    payload: TitleMappingCreateRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> TitleMappingWriteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.create_title_mapping(
            title=payload.title,
            category=payload.category,
            translated_title=payload.translated_title,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TitleMappingWriteOut(
        title_mapping=TitleMappingOut(**result["mapping"]),
        ads_updated=result["ads_updated"],
    )


@router.put("/{mapping_id}", response_model=TitleMappingWriteOut)
async def update_title_mapping(
    mapping_id: int,
    payload: TitleMappingUpdateRequest,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> TitleMappingWriteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.update_title_mapping(
            mapping_id=mapping_id,
            category=payload.category,
            translated_title=payload.translated_title,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TitleMappingWriteOut(
        title_mapping=TitleMappingOut(**result["mapping"]),
        ads_updated=result["ads_updated"],
    )


@router.delete("/{mapping_id}", response_model=TitleMappingDeleteOut)
async def delete_title_mapping(
    mapping_id: int,
    principal=Depends(get_principal),
    repository=Depends(get_repository),
) -> TitleMappingDeleteOut:
    try:
        principal.require_scopes({CATEGORIES_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await repository.delete_title_mapping(mapping_id=mapping_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryTransactionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return TitleMappingDeleteOut(deleted=result["deleted"], ads_updated=result["ads_updated"])
