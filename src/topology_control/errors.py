"""Error taxonomy.

ValidationError subclasses are fatal to a reconciliation pass and are raised
before the platform is touched. ReconciliationError subclasses are scoped to a
single workload; the driver records them and moves on to the next one.
"""


class TopologyError(Exception):
    """Base class for everything raised by topology_control."""


class TopologyFileError(TopologyError):
    """The desired-state file is missing, unreadable or does not match the schema."""


class ValidationError(TopologyError):
    """A cross-descriptor invariant does not hold."""

    def __init__(self, issues: list[str]):
        self.issues = list(issues)
        super().__init__("; ".join(self.issues))


class DuplicateName(ValidationError):
    pass


class UnresolvedDependency(ValidationError):
    pass


class CyclicDependency(ValidationError):
    pass


class InvalidPort(ValidationError):
    pass


class ReconciliationError(TopologyError):
    """Applying an operation to the platform failed."""


class PlatformUnavailable(ReconciliationError):
    """The platform could not be reached; the call is safe to retry."""


class ApplyTimeout(ReconciliationError):
    """An apply call did not finish within its deadline."""


class NamespaceNotEmpty(ReconciliationError):
    """A namespace still holds workloads and cascading delete was not confirmed."""
