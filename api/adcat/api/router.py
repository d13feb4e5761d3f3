from fastapi import APIRouter

from adcat.api.routes import ads, categories, health, mappings, title_mappings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(mappings.router, prefix="/mappings", tags=["url-mappings"])
api_router.include_router(title_mappings.router, prefix="/title-mappings", tags=["title-mappings"])
api_router.include_router(ads.router, prefix="/ads", tags=["ads"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])
