"""Error taxonomy shared by the tracking services and mapped to HTTP in main.py."""


class TrackingError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Conflict(TrackingError):
    status_code = 409


class InvalidState(TrackingError):
    status_code = 409


class NotFound(TrackingError):
    status_code = 404


class Forbidden(TrackingError):
    status_code = 403


class UpstreamFailure(TrackingError):
    """Store or mapping service failure; transient, the caller may retry."""

    status_code = 503
