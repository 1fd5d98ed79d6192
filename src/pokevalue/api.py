"""HTTP surface: create a scan submission, then poll it until it settles."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .config import AppConfig
from .errors import ImageTooLarge, InvalidImage, PokeValueError, StoreError
from .lifecycle import LifecycleManager, build_manager
from .query import SubmissionQuery
from .validation import validate_image_data_uri

LOGGER = logging.getLogger(__name__)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _process_in_background(manager: LifecycleManager, submission_id: str) -> None:
    try:
        manager.process(submission_id)
    except PokeValueError:
        # The submission is left in its last recorded status.
        LOGGER.exception("Processing aborted for submission %s", submission_id)


def create_app(config: Optional[AppConfig] = None, manager: Optional[LifecycleManager] = None) -> FastAPI:
    """Build the API around ``manager`` (or one wired from ``config``)."""

    config = config or AppConfig.from_env(Path.cwd())
    manager = manager or build_manager(config)
    query = SubmissionQuery(manager.store)

    app = FastAPI(title="PokeValue", description="Identify and value trading cards from a photo.")
    app.state.config = config
    app.state.manager = manager
    app.state.query = query

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/scan-card")
    async def scan_card(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            LOGGER.warning("Rejected scan request with an unparseable body")
            return _error("Invalid request body. Expected JSON with imageDataUri.", 400)
        if not isinstance(body, dict):
            return _error("Invalid request body. Expected JSON with imageDataUri.", 400)

        # Validation and the store insert block; keep them off the event loop.
        try:
            image = await run_in_threadpool(
                validate_image_data_uri,
                body.get("imageDataUri"),
                max_bytes=config.max_image_bytes,
                accepted_types=config.accepted_image_types,
            )
        except ImageTooLarge as exc:
            return _error(str(exc), 413)
        except InvalidImage as exc:
            return _error(str(exc), 400)

        try:
            submission_id = await run_in_threadpool(manager.submit, image.data_uri)
        except StoreError as exc:
            LOGGER.exception("Failed to insert initial submission")
            return _error(f"Server error: {exc}", 500)

        background_tasks.add_task(_process_in_background, manager, submission_id)
        return JSONResponse({"submissionId": submission_id})

    @app.get("/api/get-submission/{submission_id}")
    def get_submission(submission_id: str) -> JSONResponse:
        try:
            payload = query.payload(submission_id)
        except StoreError as exc:
            LOGGER.exception("Error fetching submission %s", submission_id)
            return _error(f"Server error: {exc}", 500)
        if payload is None:
            return _error("Submission not found.", 404)
        return JSONResponse(payload)

    return app
