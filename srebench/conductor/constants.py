from enum import Enum


class State(str, Enum):
    PROVISIONING = "Provisioning"
    BASELINE_DEPLOYING = "BaselineDeploying"
    BASELINE_HEALTHY = "BaselineHealthy"
    FAULT_INJECTING = "FaultInjecting"
    DEGRADED = "Degraded"
    REMEDIATING = "Remediating"
    RECOVERED = "Recovered"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    def __str__(self):
        return self.value


TERMINAL_STATES = frozenset({State.RECOVERED, State.FAILED, State.TIMED_OUT})

# Failed is reachable from every non-terminal state (setup errors, cancellation)
TRANSITIONS = {
    State.PROVISIONING: {State.BASELINE_DEPLOYING, State.FAILED},
    State.BASELINE_DEPLOYING: {State.BASELINE_HEALTHY, State.FAILED},
    State.BASELINE_HEALTHY: {State.FAULT_INJECTING, State.FAILED},
    State.FAULT_INJECTING: {State.DEGRADED, State.FAILED},
    State.DEGRADED: {State.REMEDIATING, State.RECOVERED, State.TIMED_OUT, State.FAILED},
    State.REMEDIATING: {State.RECOVERED, State.TIMED_OUT, State.FAILED},
    State.RECOVERED: set(),
    State.FAILED: set(),
    State.TIMED_OUT: set(),
}

EXIT_CODES = {
    State.RECOVERED: 0,
    State.TIMED_OUT: 1,
    State.FAILED: 2,
}
EXIT_INVALID = 3

STEP_PHASES = ("baseline", "fault")

DEFAULT_TIMEOUT = 600.0
DEFAULT_DETECTION_WINDOW = 120.0
DEFAULT_STEP_TIMEOUT = 120.0
NAMESPACE_PREFIX = "srebench"
