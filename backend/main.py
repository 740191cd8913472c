#!/usr/bin/env python3

"""
Backend for the driver reassignment engine.

Run locally:
  uvicorn backend.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations
import os
import traceback
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from sqlalchemy import text

from fleetops.runtime import configure_logging
from fleetops.reassignment.config import ReassignmentSettings, load_settings
from fleetops.reassignment.db import get_db, get_session_factory
from fleetops.reassignment.router import create_router as create_reassignment_router


# --------------------------------------------------------------------------------------------------
# Global Constants & Environment
# --------------------------------------------------------------------------------------------------
DEBUG_API = os.getenv("DEBUG_API", "0") == "1"
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*")
ALLOW_ORIGINS = [o.strip() for o in CORS_ALLOW_ORIGINS.split(",") if o.strip()] or ["*"]

logger = configure_logging("backend.main")

SETTINGS: Optional[ReassignmentSettings] = None


def current_settings() -> ReassignmentSettings:
    global SETTINGS
    if SETTINGS is None:
        SETTINGS = load_settings()
    return SETTINGS


# --------------------------------------------------------------------------------------------------
# Admin Router (settings reload, database check)
# --------------------------------------------------------------------------------------------------
def admin_router() -> APIRouter:
    router = APIRouter(prefix="/admin", tags=["Admin"])

    @router.post("/reload")
    def admin_reload():
        """Re-read settings from the environment and the dataset dir"""
        global SETTINGS
        SETTINGS = load_settings()
        logger.info("settings reloaded: %s", SETTINGS.as_dict())
        return {"status": "ok", "settings": SETTINGS.as_dict()}

    @router.get("/db_selftest")
    def db_selftest():
        try:
            with get_session_factory()() as db:
                db.execute(text("SELECT 1"))
            return {"ok": True}
        except Exception as e:
            logger.warning("database self-test failed: %s", e)
            return {"ok": False, "error": str(e)}

    return router


# --------------------------------------------------------------------------------------------------
# Public Endpoints
# --------------------------------------------------------------------------------------------------
def register_routes(app: FastAPI):
    @app.get("/health")
    def health():
        return {"status": "ok", "settings_loaded": SETTINGS is not None}

    @app.get("/config")
    def config():
        return {
            "settings": current_settings().as_dict(),
            "cors_allow_origins": ALLOW_ORIGINS,
        }


# --------------------------------------------------------------------------------------------------
# FastAPI App (with lifespan)
# --------------------------------------------------------------------------------------------------
def create_app() -> FastAPI:
    async def lifespan(app: FastAPI):
        settings = current_settings()
        logger.info("startup: settings %s", settings.as_dict())
        yield

    app = FastAPI(title="Driver Reassignment Engine", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.exception("unhandled error on %s", request.url.path)
        payload = {"error": str(exc)}
        if DEBUG_API:
            payload["traceback"] = traceback.format_exc()
        return JSONResponse(status_code=500, content=payload)

    app.include_router(admin_router())
    app.include_router(create_reassignment_router(get_db, current_settings))

    register_routes(app)
    return app

app = create_app()


# --------------------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("backend.main:app", host="0.0.0.0", port=port, reload=False)
