"""API router aggregation"""
from fastapi import APIRouter

from flagengine.api.v1 import flags

api_router = APIRouter()

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(flags.router, tags=["flags"])

api_router.include_router(v1_router)

__all__ = ["api_router"]
