"""Failure kinds raised by the autoinstall image pipeline.

Components raise one of these; only the command-line entry point turns
them into an exit status.  ``stage`` names the pipeline step that was
running and is filled in by the pipeline when a component leaves it unset.
"""


class AutoinstallError(Exception):
    """Base class for every fatal pipeline condition."""

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.stage = stage


class DependencyMissing(AutoinstallError):
    """A required external tool or data file is not installed."""


class InputValidation(AutoinstallError):
    """Missing input files or an inconsistent combination of options."""


class NetworkFailure(AutoinstallError):
    """Downloading an image, manifest or signing key failed."""


class IntegrityFailure(AutoinstallError):
    """Signature or digest verification of the source image failed."""


class StructuralAssumptionViolation(AutoinstallError):
    """Media contents do not look like a supported release."""


class BuildFailure(AutoinstallError):
    """Extracting or repackaging the image failed."""
