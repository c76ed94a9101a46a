class InvalidRequest(ValueError):
    """Caller-fixable input problem (bad period, bad grouping, missing bounds)."""


class NotFound(ValueError):
    pass


class Conflict(ValueError):
    pass


class AuthError(ValueError):
    pass


class UpstreamUnavailable(RuntimeError):
    """A store read failed; safe to retry from scratch."""

    retryable = True


class ReportTimeout(UpstreamUnavailable):
    """The report budget ran out or the enclosing request was cancelled."""
