"""
Exception hierarchy for Mint.

Abortive failures are raised as one of these types. Advisory failures are
never raised; they are attached to result objects instead.
"""


class MintError(Exception):
    """Base class for every error Mint raises on purpose."""


class ConfigError(MintError):
    """Invalid configuration file or environment override."""


class DiscoveryError(MintError):
    """A tag-filtered describe call failed."""


class AmbiguousVMError(DiscoveryError):
    """More than one live instance matches a single (owner, vm) pair."""

    def __init__(self, owner: str, vm_name: str, count: int):
        self.owner = owner
        self.vm_name = vm_name
        self.count = count
        super().__init__(
            f'multiple VMs found for owner "{owner}", vm "{vm_name}" ({count} instances)'
        )


class VMNotFoundError(MintError):
    """No live instance exists for the requested (owner, vm) pair."""


class BootstrapVerificationError(MintError):
    """The bootstrap template does not match the pinned fingerprint."""


class QuotaExceededError(MintError):
    """The owner already holds the maximum number of Elastic IPs."""


class PrerequisiteError(MintError):
    """Shared infrastructure or a per-owner resource is missing."""


class VolumeAZMismatchError(MintError):
    """A pending-attach volume lives in a different AZ than its instance."""


class DestroyNotConfirmedError(MintError):
    """Destructive call issued without explicit confirmation."""


class BootstrapFailedError(MintError):
    """The instance reported mint:bootstrap=failed."""

    def __init__(self, instance_id: str, phase: str = ""):
        self.instance_id = instance_id
        self.phase = phase
        if phase:
            message = f"bootstrap failed on instance {instance_id} (phase: {phase})"
        else:
            message = f"bootstrap failed on instance {instance_id}"
        super().__init__(message)


class BootstrapTimeoutError(MintError):
    """Bootstrap did not reach a terminal status before the poll timeout."""


class PollCancelledError(MintError):
    """The bootstrap poll was interrupted by the caller."""
