"""
API v1 package
"""

from fastapi import APIRouter

from .cv import router as cv_router

# Create main API router
api_router = APIRouter()

# Include CV pipeline routes
api_router.include_router(cv_router, prefix="/cv", tags=["cv"])
