"""
Internal API v1 package - for service-to-service calls only
"""

from fastapi import APIRouter

from .health import router as health_router
from .llm_usage import router as llm_usage_router

# Create internal API router
internal_api_router = APIRouter()

# Include LLM usage logging and aggregation routes
internal_api_router.include_router(llm_usage_router)

# Include internal readiness route
internal_api_router.include_router(health_router)
