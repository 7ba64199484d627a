"""
Exceptions raised by the searchlight RSA pipeline.
"""


class MegRsaError(Exception):
    """Base class for pipeline errors."""

    # identifiers of the trials that could not be read before the error
    missing_identifiers = ()


class InsufficientResolutionError(MegRsaError, ValueError):
    """Raw data has fewer vertices than the target resolution."""


class EmptyMaskError(MegRsaError, ValueError):
    """Masks were given but none of them covers the hemisphere."""


class EmptyOverlapError(MegRsaError, ValueError):
    """Model and data timelines do not overlap at the requested lag."""


class NoTrialsLoadedError(MegRsaError, ValueError):
    """Every trial of a subject/hemisphere failed to load."""


class InconsistentTrialError(MegRsaError, ValueError):
    """A trial's raw shape or timing differs from the other trials of the same unit."""


class FitCancelledError(MegRsaError, RuntimeError):
    """The GLM fit was cancelled before all timepoints were processed."""
