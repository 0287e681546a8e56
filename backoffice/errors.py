"""Error taxonomy shared by the allocator, the lifecycle core and the API layer."""


class BackofficeError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BackofficeError):
    """A referenced entity does not exist."""
    status_code = 404


class Conflict(BackofficeError):
    """A state-machine precondition does not hold. Never retried."""
    status_code = 409


class ValidationError(BackofficeError):
    """Malformed input. `fields` maps field name -> problem."""
    status_code = 422

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(message)
        self.fields = fields or {}


class Unavailable(BackofficeError):
    """The entity store could not be reached."""
    status_code = 503
