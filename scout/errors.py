"""Error taxonomy shared by the orchestrator, the HTTP surface and the CLI."""


class ScoutError(Exception):
    """Base class for every error an externally-triggered action can return.

    ``kind`` is the machine-checkable discriminator, ``status_code`` the HTTP
    status the API maps it to.
    """

    kind = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(ScoutError):
    kind = "invalid_argument"
    status_code = 400


class NotFoundError(ScoutError):
    kind = "not_found"
    status_code = 404


class ConflictError(ScoutError):
    kind = "conflict"
    status_code = 409


class UpstreamError(ScoutError):
    """Tracker, model or remote git failure."""

    kind = "upstream"
    status_code = 502


class ResourceError(ScoutError):
    """Filesystem or process failure."""

    kind = "resource"
    status_code = 500
