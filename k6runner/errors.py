"""Error taxonomy shared by every k6runner component."""


class K6RunnerError(Exception):
    """Base class for all k6runner failures."""


class InputError(K6RunnerError):
    """Raised for bad arguments, unknown test types or malformed durations.

    Input errors are raised before anything touches the cluster and are
    never retried.
    """


class InvalidSpecError(InputError):
    """Raised when a TestRunSpec cannot be turned into a job."""


class ConfigValidationError(InputError):
    """Raised when a harness configuration file fails validation."""


class ClusterStateError(K6RunnerError):
    """Raised when the cluster does not hold the objects we expect."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RunTimeoutError(K6RunnerError):
    """Raised when a job did not reach a terminal state in time."""


class MetricsUnavailableError(K6RunnerError):
    """Raised when resource metrics could not be collected. Never fatal."""


class PersistenceError(K6RunnerError):
    """Raised when results cannot be written or read."""


class NotFoundError(PersistenceError):
    """Raised when no result records match a query."""
