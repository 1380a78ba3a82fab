"""API router aggregation."""
from fastapi import APIRouter

from delivery_plane.api.v1 import control

api_router = APIRouter()

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(control.router, tags=["control"])

api_router.include_router(v1_router)
