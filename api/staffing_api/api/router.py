from fastapi import APIRouter

from staffing_api.api.routes import applications, health, postings, referrals, streams

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(postings.router, prefix="/postings", tags=["postings"])
api_router.include_router(applications.router, prefix="/applications", tags=["applications"])
api_router.include_router(referrals.router, prefix="/referrals", tags=["referrals"])
api_router.include_router(streams.router, prefix="/streams", tags=["change-feed"])
