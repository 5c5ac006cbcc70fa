"""
Error taxonomy shared by ingestion, query and collaboration flows.

Every error carries a stable ``code`` and the HTTP status the server
renders it with, so callers can tell the failure classes apart.
"""

from typing import Optional


class MindOpsError(Exception):
    """Base class for all MindOps errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class InputValidationError(MindOpsError):
    """Missing query, unsupported file type, empty parsed content."""

    code = "invalid_input"
    status_code = 400


class NotFoundError(MindOpsError):
    code = "not_found"
    status_code = 404


class EmbeddingError(MindOpsError):
    """Embedding provider failed after all retries."""

    code = "embedding_failed"
    status_code = 502


class RetrievalError(MindOpsError):
    code = "retrieval_failed"
    status_code = 500


class GenerationError(MindOpsError):
    """Generative model call failed."""

    code = "generation_failed"
    status_code = 502


class AuthorizationError(MindOpsError):
    code = "not_authorized"
    status_code = 403


class ConnectionRequiredError(AuthorizationError):
    """Requester has no approved follow relationship to the target."""

    code = "connection_not_approved"


class TaskStateError(MindOpsError):
    """Task is not in the state the requested transition needs."""

    code = "invalid_task_state"
    status_code = 409


class QueryTimeoutError(MindOpsError):
    code = "query_timeout"
    status_code = 504

    def __init__(self, timeout: float):
        super().__init__(
            f"The query took too long to process (over {timeout:.0f}s). "
            "Please try again with a more specific question."
        )
        self.timeout = timeout
