# omtii/errors.py

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class MarketplaceError(Exception):
    """
    Base class for every failure a view can surface to the user.

    All failures are shown the same way: a transient notification carrying
    the message text, or a generic fallback when the message is empty.
    """

    status_code = 400

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def detail(self) -> str:
        return self.message or GENERIC_ERROR_MESSAGE


class ValidationFailed(MarketplaceError):
    """Rejected locally before any call to the backend."""

    status_code = 400


class PermissionDenied(MarketplaceError):
    """A local guard refused the action before any call to the backend."""

    status_code = 403


class RemoteRejected(MarketplaceError):
    """The backend answered the call with an error."""

    STATUS_BY_CODE = {
        "constraint": 409,
        "not_authorized": 403,
        "not_found": 404,
        "invalid_credentials": 400,
        "email_not_confirmed": 400,
        "already_registered": 400,
    }

    def __init__(self, message: str | None = None, code: str = "rejected"):
        super().__init__(message, self.STATUS_BY_CODE.get(code, 400))
        self.code = code


class BackendUnavailable(MarketplaceError):
    """The call to the backend never completed successfully."""

    status_code = 503
