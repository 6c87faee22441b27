"""Exception classes raised by the enrichment engines."""


class GSEAError(Exception):
    """Base class for all pathgsea errors."""


class InvalidGroupError(GSEAError, ValueError):
    """The grouping column does not define exactly two usable groups."""


class EmptyPathwaySetError(GSEAError, ValueError):
    """No pathway passed the size filter, so there is nothing to test."""


class InsufficientPermutationsError(GSEAError, ValueError):
    """The requested number of permutations is below one."""


class MissingSampleError(GSEAError, ValueError):
    """Metadata lacks rows for samples present in the abundance matrix."""


class PermutationCancelledError(GSEAError, RuntimeError):
    """The permutation loop was cancelled before the null was complete."""

    def __init__(self, completed: int, requested: int):
        self.completed = completed
        self.requested = requested
        super().__init__(
            f"Permutation run cancelled after {completed} of {requested} rounds; "
            "partial null distributions were discarded"
        )
