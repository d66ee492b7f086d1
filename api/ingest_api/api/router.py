from fastapi import APIRouter

from ingest_api.api.routes import crawl, entities, health, maintenance, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/crawl", tags=["webhooks"])
api_router.include_router(crawl.router, prefix="/crawl", tags=["crawl"])
api_router.include_router(maintenance.router, tags=["maintenance"])
api_router.include_router(entities.router, prefix="/entities", tags=["entities"])
