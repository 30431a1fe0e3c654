"""Domain exception hierarchy for autodidact.

Services raise these instead of bare ``ValueError`` so that the global
exception handler in ``main.py`` can map them to the correct HTTP status
code without fragile string matching.

The pipeline taxonomy (planning / synthesis / fetch / commit) lives here
too, so the orchestrator and the HTTP layer agree on one set of types.
"""


class AutodidactError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(AutodidactError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(AutodidactError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class AuthError(AutodidactError):
    """Authentication or authorization failure (401/403)."""

    def __init__(self, message: str = "Not authorized", *, status_code: int = 401):
        super().__init__(message, status_code=status_code)


class TaskStateError(AutodidactError):
    """Illegal task status transition, e.g. restarting a finished task (409)."""

    def __init__(self, message: str = "Invalid task state"):
        super().__init__(message, status_code=409)


# ---------------------------------------------------------------------------
# Remote repository API
# ---------------------------------------------------------------------------


class GitHubAPIError(AutodidactError):
    """Non-2xx response from the remote repository API (502 at the boundary).

    ``status`` keeps the upstream HTTP status (0 for transport errors) so
    callers can tell a 404 from a rejected ref update.
    """

    def __init__(self, status: int, message: str = "GitHub request failed"):
        super().__init__(f"GitHub API {status}: {message}", status_code=502)
        self.status = status
        self.detail = message


# ---------------------------------------------------------------------------
# Pipeline taxonomy
# ---------------------------------------------------------------------------


class PlanningFailure(AutodidactError):
    """Planner output was empty or did not match the Plan shape.  Fatal."""

    def __init__(self, message: str = "Planner returned an unusable plan"):
        super().__init__(message, status_code=422)


class SynthesisFailure(AutodidactError):
    """Step synthesizer output could not be parsed.  The step becomes a no-op."""

    def __init__(self, message: str = "Step output could not be parsed"):
        super().__init__(message, status_code=422)


class FileFetchFailure(AutodidactError):
    """A file snapshot could not be fetched.  The file is treated as new."""

    def __init__(self, path: str, message: str = "fetch failed"):
        super().__init__(f"{path}: {message}", status_code=502)
        self.path = path


class CommitAborted(AutodidactError):
    """Commit sequence stopped before the branch ref was touched."""

    def __init__(self, message: str = "Commit aborted"):
        super().__init__(message, status_code=502)


class CommitConflict(AutodidactError):
    """Branch ref update was rejected because the branch moved (409)."""

    def __init__(self, message: str = "Branch moved since the commit was prepared"):
        super().__init__(message, status_code=409)


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Parameters
    ----------
    error : str
        Short error title (e.g. ``"Internal Server Error"``).
    detail : object
        Human-readable detail string or validation error list.
    request_id : str
        The request ID for tracing.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
