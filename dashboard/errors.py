"""Centralized exception hierarchy for the job dashboard.

All exceptions inherit from DashboardError. None of them is fatal to the
process: every failure is scoped to a single resource session.
"""


class DashboardError(Exception):
    """Base exception for all dashboard errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class TransportError(DashboardError):
    """Request to the job service failed or returned a non-success status."""

    def __init__(self, message: str, status_code: int = None, response: str = None, retryable: bool = False):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.response = response
        self.retryable = retryable


class RequestCancelled(DashboardError):
    """Request aborted because its owning scope was torn down."""

    def __init__(self, scope: str = None):
        super().__init__("Request cancelled", {"scope": scope})
        self.scope = scope


class DataValidationError(DashboardError):
    """Malformed payload from the job service or event channel."""

    def __init__(self, message: str, field: str = None, value=None):
        super().__init__(message, {"field": field, "value": value})
        self.field = field
        self.value = value


class InvalidTopicFilter(DashboardError):
    """Topic filter with a misplaced '+' or '#' wildcard."""

    def __init__(self, message: str, topic_filter: str = None):
        super().__init__(message, {"filter": topic_filter})
        self.topic_filter = topic_filter


class SessionClosedError(DashboardError):
    """Operation attempted on a synchronizer that is not live."""

    def __init__(self, message: str = "Session is not live", resource: str = None):
        super().__init__(message, {"resource": resource})
        self.resource = resource
