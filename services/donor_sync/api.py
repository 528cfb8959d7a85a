"""
Administrative HTTP API for the donor sync service.

Handlers are plain functions: FastAPI runs them in its threadpool, so a
long backfill page does not block POST /backfill/stop.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import Body, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__
from .errors import (
    DonationNotFoundError,
    DonationValidationError,
    DonorPerfectAPIError,
    NotConfiguredError,
)
from .log_config import StructlogMiddleware
from .service import SyncService

logger = structlog.get_logger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message})


def create_app(service: SyncService) -> FastAPI:
    """Build the FastAPI app around an already wired SyncService."""
    app = FastAPI(title="Donor Sync", version=__version__)
    app.state.service = service
    app.add_middleware(StructlogMiddleware)

    @app.exception_handler(NotConfiguredError)
    async def not_configured(_: Request, exc: NotConfiguredError):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    @app.exception_handler(DonationValidationError)
    async def invalid_donation(_: Request, exc: DonationValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "status": "error",
                "error": "Invalid request",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(DonationNotFoundError)
    async def not_found(_: Request, exc: DonationNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(DonorPerfectAPIError)
    async def remote_failure(_: Request, exc: DonorPerfectAPIError):
        logger.warning("DonorPerfect call failed", error=str(exc), error_type=type(exc).__name__)
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.post("/webhooks/donation-updated")
    def donation_updated(payload: Dict[str, Any] = Body(...)):
        return service.receive_donation(payload)

    @app.post("/sync/{donation_id}")
    def sync_donation(donation_id: int):
        return service.sync_single(donation_id)

    @app.post("/backfill/preview")
    def backfill_preview(
        batch_size: Optional[int] = Query(None, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        return service.backfill_preview(batch_size=batch_size, offset=offset)

    @app.post("/backfill/run")
    def backfill_run(
        batch_size: Optional[int] = Query(None, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        return service.backfill_run(batch_size=batch_size, offset=offset)

    @app.post("/backfill/stop")
    def backfill_stop():
        return service.stop_backfill()

    @app.get("/match-report")
    def match_report():
        return service.match_report()

    @app.get("/stats")
    def stats():
        return service.stats()

    @app.get("/log")
    def sync_log(
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        status_filter: Optional[str] = Query(None, alias="status"),
    ):
        return service.log(limit=limit, offset=offset, status=status_filter)

    @app.get("/connection")
    def connection():
        return service.test_connection()

    @app.get("/codes")
    def codes():
        return service.check_codes()

    @app.post("/codes")
    def create_codes():
        return service.create_missing_codes()

    return app
