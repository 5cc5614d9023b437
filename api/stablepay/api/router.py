"""API router composition for all route groups."""

from fastapi import APIRouter

from .routes import admin, ops, oracles, rules

api_router = APIRouter()
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(ops.router, prefix="/ops", tags=["ops"])
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(oracles.router, prefix="/oracles", tags=["oracles"])
