"""API routers for the audit logging service."""
from fastapi import APIRouter

from . import apikeys, audit, export, health


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(audit.router)
    api_router.include_router(export.router)
    api_router.include_router(apikeys.router)
    return api_router
