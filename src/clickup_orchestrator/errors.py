"""Error taxonomy shared by the orchestrator components."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class OrchestratorError(Exception):
    """Base class for errors that are reported to API callers verbatim."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrchestratorError):
    """Bad path, branch name or input. The user can correct it."""

    status_code = 400


class NotFoundError(OrchestratorError):
    """Unknown task or session id."""

    status_code = 404


class ConflictError(OrchestratorError):
    """Request conflicts with the current state."""

    status_code = 409


class AlreadyRunningError(ConflictError):
    """A process is already attached to the id."""


class InvalidTransitionError(ConflictError):
    """Task status does not allow the requested action."""


class NotRunningError(ConflictError):
    """No live process is attached to the id."""


class ExternalServiceError(OrchestratorError):
    """Tracker API (or git remote) unreachable or rejecting the request."""

    status_code = 502


class ProcessError(OrchestratorError):
    """Agent process could not be started."""

    status_code = 500


async def orchestrator_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render an OrchestratorError as a FastAPI-style detail body."""
    assert isinstance(exc, OrchestratorError)
    if exc.status_code >= 500:
        logger.warning(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_error_handlers(app: FastAPI) -> None:
    """Attach the error handler for the whole taxonomy."""
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
