"""Errors that cross the request boundary.

Everything else the pipeline can run into (no signal, empty model output,
gate rejections, oracle timeouts) is a business outcome recorded on the
trace, not an exception.
"""


class MarginError(Exception):
    """Base class for margin request errors."""


class MarginAuthError(MarginError):
    """No authenticated user on the request."""


class MarginRequestError(MarginError):
    """Missing or invalid request fields."""


class NudgeNotFoundError(MarginError):
    """Feedback refers to a nudge the user does not own."""
