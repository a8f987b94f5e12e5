from fastapi import APIRouter

from casting_pipeline.api.routes import dead_letters, health, intake, moderation, sources, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sources.router, prefix="/sources", tags=["sources"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["intake"])
api_router.include_router(intake.router, prefix="/intake", tags=["intake"])
api_router.include_router(moderation.router, prefix="/moderation", tags=["moderation"])
api_router.include_router(dead_letters.router, prefix="/dead-letters", tags=["pipeline"])
