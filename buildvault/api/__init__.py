from fastapi import APIRouter

from buildvault.api.builds_api import build_router

api_router = APIRouter(prefix="/api")

api_router.include_router(build_router)
