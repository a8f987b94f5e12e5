from fastapi import APIRouter, Depends, HTTPException, Query, status

from casting_pipeline.core.security import get_human_principal
from casting_pipeline.schemas.candidates import (
    CastingCallOut,
    ModerationDecisionOut,
    ModerationDecisionRequest,
    ModerationQueueOut,
)
from casting_pipeline.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.get("/queue", response_model=ModerationQueueOut)
async def moderation_queue(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> ModerationQueueOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        page = await repository.list_moderation_queue(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ModerationQueueOut(
        items=[CastingCallOut(**row) for row in page["items"]],
        total=page["total"],
        limit=limit,
        offset=offset,
    )


@router.get("/candidates/{candidate_id}", response_model=CastingCallOut)
async def get_candidate(
    candidate_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> CastingCallOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_casting_call(candidate_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return CastingCallOut(**row)


@router.post("/candidates/{candidate_id}/approve", response_model=ModerationDecisionOut)
async def approve_candidate(
    candidate_id: str,
    payload: ModerationDecisionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ModerationDecisionOut:
    return await _decide(
        candidate_id=candidate_id,
        target_status="live",
        reason=payload.reason if payload else None,
        principal=principal,
        repository=repository,
    )


@router.post("/candidates/{candidate_id}/reject", response_model=ModerationDecisionOut)
async def reject_candidate(
    candidate_id: str,
    payload: ModerationDecisionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ModerationDecisionOut:
    return await _decide(
        candidate_id=candidate_id,
        target_status="rejected",
        reason=payload.reason if payload else None,
        principal=principal,
        repository=repository,
    )


async def _decide(
    *,
    candidate_id: str,
    target_status: str,
    reason: str | None,
    principal,
    repository,
) -> ModerationDecisionOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row, changed = await repository.set_casting_call_status(
            candidate_id=candidate_id,
            status=target_status,
            actor_id=principal.actor_id,
            reason=reason,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ModerationDecisionOut(candidate=CastingCallOut(**row), changed=changed)
