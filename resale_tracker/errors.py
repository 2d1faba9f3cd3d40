"""Exception taxonomy for the pricing pipeline."""


class ResaleTrackerError(Exception):
    """Base class for pipeline errors."""


class AuthenticationError(ResaleTrackerError):
    """Credential exchange with BookScouter failed (network, rejected, bad token)."""


class UpstreamAuthError(ResaleTrackerError):
    """BookScouter rejected the token again after a forced refresh."""


class UpstreamError(ResaleTrackerError):
    """BookScouter answered with a non-auth, non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(ResaleTrackerError):
    """BookScouter returned a body that could not be interpreted."""


class NotFoundError(ResaleTrackerError):
    """A referenced user, book, batch, alert or job does not exist."""
