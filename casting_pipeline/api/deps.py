from fastapi import Depends

from casting_pipeline.core.config import Settings, get_settings
from casting_pipeline.services.health import HealthThresholds, PipelineHealthMonitor
from casting_pipeline.services.intake import IntakeFilter
from casting_pipeline.services.repository import get_repository


def get_intake_filter(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> IntakeFilter:
    return IntakeFilter(
        repository,
        recency_window_hours=settings.intake_recency_window_hours,
        min_text_length=settings.intake_min_text_length,
    )


def get_health_monitor(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> PipelineHealthMonitor:
    return PipelineHealthMonitor(repository, thresholds_from_settings(settings))


def thresholds_from_settings(settings: Settings) -> HealthThresholds:
    return HealthThresholds(
        backlog_threshold=settings.health_backlog_threshold,
        success_rate_floor=settings.health_success_rate_floor,
        success_window_hours=settings.health_success_window_hours,
        stale_after_hours=settings.health_stale_after_hours,
    )
