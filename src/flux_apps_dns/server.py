"""HTTP status and control endpoints for the apps DNS manager."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from flux_apps_dns.cli import AppsDNSManager

logger = logging.getLogger(__name__)

SERVICE_NAME = "flux-apps-dns"


def create_app(manager: "AppsDNSManager") -> FastAPI:
    """Build the FastAPI app exposing health, status, DNS state and manual trigger."""
    app = FastAPI(title="Flux Apps DNS Manager", docs_url=None, redoc_url=None)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/status")
    def get_status() -> Dict[str, Any]:
        return manager.get_status()

    @app.get("/dns-state")
    def get_dns_state() -> Dict[str, Dict[str, List[str]]]:
        return manager.get_dns_state()

    # Sync handler: runs in the threadpool, so the loop may block on network calls.
    @app.post("/trigger")
    def trigger() -> JSONResponse:
        if not manager.run_processing_loop():
            logger.info("Manual trigger skipped, processing loop already running")
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"status": "skipped", "message": "Processing loop already running"},
            )
        return JSONResponse(content={"status": "ok", "message": "Processing loop triggered"})

    return app
