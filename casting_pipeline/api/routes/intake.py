from fastapi import APIRouter, Depends, HTTPException, status

from casting_pipeline.api.deps import get_intake_filter
from casting_pipeline.core.security import get_machine_principal
from casting_pipeline.schemas.intake import IntakeAck, PageIntakeRequest
from casting_pipeline.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/pages", response_model=IntakeAck, response_model_exclude_none=True)
async def submit_page(
    payload: PageIntakeRequest,
    principal=Depends(get_machine_principal),
    intake_filter=Depends(get_intake_filter),
) -> IntakeAck:
    try:
        principal.require_scopes({"intake:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        decision = await intake_filter.accept_page(payload)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if decision.skipped is not None:
        return IntakeAck(skipped=decision.skipped.value, message_id=decision.message_id)
    return IntakeAck(queued=True, message_id=decision.message_id, job_id=decision.job_id)
