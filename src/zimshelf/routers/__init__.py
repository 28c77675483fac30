from fastapi import APIRouter

from zimshelf.routers.catalog import router as catalog_router
from zimshelf.routers.logs import router as logs_router
from zimshelf.routers.server import router as server_router
from zimshelf.routers.settings import router as settings_router
from zimshelf.routers.zim import router as zim_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(zim_router)
api_router.include_router(catalog_router)
api_router.include_router(settings_router)
api_router.include_router(server_router)
api_router.include_router(logs_router)
