"""API router composition for all route groups."""

from fastapi import APIRouter

from .routes import accounts, auth, ops

api_router = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
api_router.include_router(ops.router, prefix="/ops", tags=["ops"])
