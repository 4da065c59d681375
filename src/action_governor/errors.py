"""Error taxonomy shared by the queue, dispatch and retry operations."""


class GovernorError(Exception):
    """Base class for all action governor failures."""


class ValidationError(GovernorError):
    """Raised when required input is missing or malformed."""


class NotFoundError(GovernorError):
    """Raised when a referenced action, rule, task or agent does not exist."""


class InvalidTransitionError(GovernorError):
    """Raised when an action's current status does not allow the operation."""


class PreconditionError(GovernorError):
    """Raised when a task is not eligible for dispatch."""


class ExecutionError(GovernorError):
    """Raised when an executor reported failure or timed out."""
