"""
approvals/errors.py

Error taxonomy for the approval workflow and the JSON error handlers that expose it.

Classes:
- ValidationError: missing/malformed input or a violated business rule (400). Never retried.
- StateConflict: the record exists but is no longer in the expected stage/status. The client
  must re-fetch and decide; the server never retries it.
- RecordNotFound: unknown record id (404).
- TransientInfrastructureError: DB/network hiccup. Retried by RetryPolicy, surfaces as 503
  once retries are exhausted.
- OperationTimeout: a deadline expired (503).
- ExternalSyncError: the ERP rejected the payload or was unreachable. Recorded on the record;
  the internal approval stays committed.

IMPORTANT:
- Validation happens before any write. Routes never catch these to "fix" state.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from flask import Flask, current_app, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for errors that map to a JSON response."""

    status_code = 500
    default_message = "Workflow error"

    def __init__(self, message: str | None = None, *, details: Any = None, status_code: int | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(WorkflowError):
    status_code = 400
    default_message = "Invalid request"


class StateConflict(WorkflowError):
    status_code = 409
    default_message = "Record is no longer in the expected state"


class RecordNotFound(WorkflowError):
    status_code = 404
    default_message = "Record not found"


class TransientInfrastructureError(WorkflowError):
    status_code = 503
    default_message = "Service temporarily unavailable"


class OperationTimeout(TransientInfrastructureError):
    default_message = "Operation timed out"


class ExternalSyncError(WorkflowError):
    status_code = 502
    default_message = "ERP synchronization failed"

    def __init__(self, message: str | None = None, *, body: Optional[Any] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.body = body
        if self.details is None and body is not None:
            self.details = body


def register_error_handlers(app: Flask) -> None:
    """Attach JSON handlers for the taxonomy above, HTTP errors and unhandled exceptions."""

    @app.errorhandler(WorkflowError)
    def _workflow_error(error: WorkflowError):
        if error.status_code >= 500:
            logger.warning("%s: %s", error.__class__.__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def _http_error(error: HTTPException):
        return jsonify({"error": error.description or error.name}), error.code or 500

    @app.errorhandler(Exception)
    def _unhandled(error: Exception):
        logger.exception("Unhandled error")
        body = {"error": "Internal Server Error"}
        if current_app.debug or current_app.config.get("EXPOSE_ERROR_DETAILS"):
            body["details"] = str(error)
        return jsonify(body), 500
