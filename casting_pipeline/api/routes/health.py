from fastapi import APIRouter, Depends

from casting_pipeline.api.deps import get_health_monitor
from casting_pipeline.schemas.health import PipelineHealthOut

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/pipeline", response_model=PipelineHealthOut)
async def pipeline_health(monitor=Depends(get_health_monitor)) -> PipelineHealthOut:
    return await monitor.check()
