"""
Error taxonomy for the MPC path-tracking core.

Parse errors are recovered at the ingestion boundary, solve errors travel out of
the controller inside a ControlResult, and contract violations are fatal.
"""


class MPCError(Exception):
    """Base class for recoverable MPC errors."""


class InsufficientWaypoints(MPCError):
    """Fewer waypoints than the polynomial fit needs (order + 1)."""

    def __init__(self, available, required):
        super().__init__(
            f"need at least {required} waypoints for the path fit, got {available}")
        self.available = available
        self.required = required


class MalformedWaypointRecord(MPCError, ValueError):
    """A waypoint record with a missing or unparsable numeric field."""

    def __init__(self, record, reason):
        super().__init__(f"malformed waypoint record {record!r}: {reason}")
        self.record = record


class SolverNonConvergence(MPCError):
    """Solver stopped before reaching its tolerance and the iterate is infeasible."""


class SolverInfeasible(MPCError):
    """Solver proved the constraints cannot be satisfied together."""


class SolverNumericalError(MPCError):
    """Solver aborted on a numerical problem (NaN, failed step, internal error)."""


class ContractViolation(AssertionError):
    """
    Declared problem sizes disagree with what a callback reads or writes.

    Raised as an assertion: this is a programming error and must never be
    turned into a runtime result.
    """
