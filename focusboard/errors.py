"""
Error taxonomy for the board.

Each error carries the HTTP status the server answers with, so routes can
raise freely and let the error handlers build the response envelope.
"""


class FocusboardError(Exception):
    """Base class for all board errors."""
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(FocusboardError):
    """Bad or missing input."""
    status_code = 400
    public_message = "Invalid request"


class NotFoundError(FocusboardError):
    """Unknown id, or no row matching the requested state."""
    status_code = 404
    public_message = "Not found"


class ConflictError(FocusboardError):
    """The operation would break a board invariant."""
    status_code = 409
    public_message = "Conflict"


class StorageError(FocusboardError):
    """The database call itself failed. Details are logged, never returned."""
    status_code = 500
    public_message = "Storage failure"
