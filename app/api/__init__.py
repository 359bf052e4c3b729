from fastapi import APIRouter
from app.api import files, screening, webhooks

api_router = APIRouter()
api_router.include_router(screening.router, prefix="/screening", tags=["screening"])
api_router.include_router(files.router, prefix="/files", tags=["files"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
