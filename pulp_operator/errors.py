"""
Error taxonomy for a reconciliation pass.

NotFound has no class here: a 404 on lookup is the signal to
create the sub-resource and is reported as ``None`` by the cluster client.
"""


class OperatorError(Exception):
    """Base class for every failure the engine reports through a ReconcileOutcome."""


class LookupFailure(OperatorError):
    """A read failed for a reason other than "not found" (API error, timeout)."""


class ApplyFailure(OperatorError):
    """A create/update/patch was rejected, including optimistic-lock conflicts."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status

    @property
    def conflict(self) -> bool:
        return self.status == 409


class MissingCredentialData(OperatorError):
    """A required key is absent from a queried secret."""


class ExecError(OperatorError):
    """A command executed inside a workload container returned non-zero."""
