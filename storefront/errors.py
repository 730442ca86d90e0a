"""Error taxonomy shared by services and route handlers.

Every error carries a human-readable message and the HTTP status the route
boundary maps it to.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(StorefrontError):
    status_code = 400


class Unauthorized(StorefrontError):
    status_code = 401


class NotFound(StorefrontError):
    status_code = 404


class InvalidState(StorefrontError):
    status_code = 400


class UpstreamFailure(StorefrontError):
    """A payment gateway or database call failed."""

    status_code = 500
