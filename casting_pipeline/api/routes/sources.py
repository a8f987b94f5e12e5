from fastapi import APIRouter, Depends, HTTPException, Query, status

from casting_pipeline.core.security import get_human_principal
from casting_pipeline.schemas.sources import SourceCreateRequest, SourceOut, SourcePatchRequest, SourceType
from casting_pipeline.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _require(principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("", response_model=SourceOut, status_code=status.HTTP_201_CREATED)
async def create_source(
    payload: SourceCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    _require(principal, "sources:write")

    try:
        row = await repository.create_source(
            source_type=payload.source_type.value,
            source_identifier=payload.source_identifier,
            source_name=payload.source_name,
            is_active=payload.is_active,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SourceOut(**row)


@router.get("", response_model=list[SourceOut])
async def list_sources(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    source_type: SourceType | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SourceOut]:
    _require(principal, "sources:read")

    try:
        rows = await repository.list_sources(
            source_type=source_type.value if source_type else None,
            is_active=is_active,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SourceOut(**row) for row in rows]


@router.get("/{source_id}", response_model=SourceOut)
async def get_source(
    source_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    _require(principal, "sources:read")

    try:
        row = await repository.get_source(source_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SourceOut(**row)


@router.patch("/{source_id}", response_model=SourceOut)
async def patch_source(
    source_id: str,
    payload: SourcePatchRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    _require(principal, "sources:write")

    try:
        row = await repository.update_source(
            source_id,
            source_type=payload.source_type.value if payload.source_type else None,
            source_identifier=payload.source_identifier,
            source_name=payload.source_name,
            is_active=payload.is_active,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SourceOut(**row)


@router.post("/{source_id}/deactivate", response_model=SourceOut)
async def deactivate_source(
    source_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    _require(principal, "sources:write")

    try:
        row = await repository.deactivate_source(source_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return SourceOut(**row)
