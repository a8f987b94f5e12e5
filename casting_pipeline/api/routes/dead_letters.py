from fastapi import APIRouter, Depends, HTTPException, Query, status

from casting_pipeline.core.security import get_human_principal
from casting_pipeline.schemas.jobs import DeadLetterOut, DeadLetterReplayOut, JobQueue
from casting_pipeline.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[DeadLetterOut])
async def list_dead_letters(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    queue: JobQueue | None = Query(default=None),
    include_replayed: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[DeadLetterOut]:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_dead_letters(
            queue=queue,
            include_replayed=include_replayed,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [DeadLetterOut(**row) for row in rows]


@router.get("/{dead_letter_id}", response_model=DeadLetterOut)
async def get_dead_letter(
    dead_letter_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> DeadLetterOut:
    try:
        principal.require_scopes({"pipeline:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_dead_letter(dead_letter_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return DeadLetterOut(**row)


@router.post("/{dead_letter_id}/replay", response_model=DeadLetterReplayOut)
async def replay_dead_letter(
    dead_letter_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> DeadLetterReplayOut:
    try:
        principal.require_scopes({"pipeline:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        replay = await repository.replay_dead_letter(dead_letter_id, actor_id=principal.actor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return DeadLetterReplayOut(**replay)
