"""Provisioning error taxonomy.

Every failure aborts the run. Nothing is rolled back; re-running is the
recovery path, and long-lived keys are reused rather than regenerated.
"""


class ProvisioningError(Exception):
    """Base class for every fatal provisioning condition."""
    exit_code = 1


class ValidationFailure(ProvisioningError):
    """Bad input. Raised before anything is written or deleted."""
    exit_code = 2


class RunInProgress(ProvisioningError):
    """Another provisioning run holds the lock on the output directory."""
    pass


class GenerationFailure(ProvisioningError):
    """The issuing collaborator did not produce an expected artifact."""
    pass


class KeyConsistencyViolation(ProvisioningError):
    """Persisted key material disagrees with the shared configuration.

    Never repaired automatically: the operator must delete the stale
    artifact or clear the recorded value and re-run.
    """
    pass


class DistributionFailure(ProvisioningError):
    """An artifact expected in a node root is missing."""
    pass


class RegistrationFailure(ProvisioningError):
    """The coordination layer rejected or did not answer the peer registration."""
    pass
