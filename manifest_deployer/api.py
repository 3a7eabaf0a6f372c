"""
Manifest Deployer — Status API

Read-only FastAPI app over manifest DeployItems: CORS for dashboards,
per-IP rate limiting (slowapi), /health, /metrics and /api/deployitems.

Usage:
  manifest-deployer-api
"""

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from manifest_deployer import VERSION
from manifest_deployer.config import Settings, settings as default_settings
from manifest_deployer.models import ErrorResponse
from manifest_deployer.routers import deployitems, system

logger = logging.getLogger("manifest-deployer-api")


async def _unhandled(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=True)
    body = ErrorResponse(detail="Internal server error", code="INTERNAL_ERROR")
    return JSONResponse(status_code=500, content=body.model_dump())


def create_app(settings: Settings = default_settings) -> FastAPI:
    app = FastAPI(
        title="Manifest Deployer API",
        description="Read-only status of manifest DeployItems and their managed resources",
        version=VERSION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.state.limiter = deployitems.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, _unhandled)
    app.include_router(system.router)
    app.include_router(deployitems.router, prefix="/api")
    return app


app = create_app()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host=default_settings.API_HOST, port=default_settings.API_PORT, log_level="info")
