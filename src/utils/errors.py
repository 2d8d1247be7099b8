from __future__ import annotations


class RunQueueError(RuntimeError):
    pass


class InvalidInputError(RunQueueError, ValueError):
    """Malformed identifiers or arguments; raised before any mutation."""


class NotFoundError(RunQueueError):
    pass


class NoWorkAvailable(RunQueueError):
    """The queue has no eligible job. A normal poll outcome, not a failure."""


class UpstreamFailure(RunQueueError):
    """Report generation failed upstream (network, auth, missing credentials)."""


class InvalidUpstreamResponse(RunQueueError):
    """Report generation returned malformed or out-of-range content."""


class PersistenceFailure(RunQueueError):
    pass
