"""Error taxonomy shared by the cluster, applier, observer and conductor layers."""


class SREBenchError(Exception):
    """Base class for every error raised by srebench."""


class ClusterUnreachableError(SREBenchError):
    """The control plane did not answer within the probe window."""


class ProvisioningError(SREBenchError):
    """An ephemeral cluster could not be created or deleted."""


class FatalApplyError(SREBenchError):
    """A manifest or API call was rejected and will not succeed on retry."""

    def __init__(self, message: str, status: int | None = None, attempts: int = 1):
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class TransientApplyError(SREBenchError):
    """A retryable API failure (conflict, throttling, 5xx, dropped connection)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ObservationUnavailable(SREBenchError):
    """A single observation target could not be resolved."""


class PredicateSyntaxError(SREBenchError):
    """A predicate expression could not be parsed."""


class PredicateTimeout(SREBenchError):
    """A predicate never held before its deadline.

    Raised only inside the engine and turned into the TimedOut terminal state there.
    """

    def __init__(self, message: str, snapshot=None):
        super().__init__(message)
        self.snapshot = snapshot


class ScenarioValidationError(SREBenchError):
    """A scenario document is malformed or violates a structural invariant."""


class ScenarioNotFoundError(SREBenchError):
    """No scenario with the requested id or path exists."""


class ScenarioCancelled(SREBenchError):
    """The run was aborted by an external cancellation signal."""


class IllegalTransitionError(SREBenchError):
    """The engine attempted a state transition that the state machine forbids."""
