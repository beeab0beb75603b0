from fastapi import APIRouter
from trackpro.api.v2 import (
    jobs,
    tracking,
    websocket,
)

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(tracking.router, prefix="/track", tags=["tracking"])
api_router.include_router(websocket.router, tags=["websocket"])
