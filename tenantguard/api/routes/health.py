"""Liveness endpoint."""

from fastapi import APIRouter, Request

from tenantguard import __version__

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(request: Request) -> dict:
    return {
        "status": "ok",
        "storage": type(request.app.state.storage).__name__,
        "version": __version__,
    }
