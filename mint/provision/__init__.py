"""
Provisioning core: VM lifecycle operations against injected AWS clients.
"""

from .destroy import Destroyer
from .init import Initializer
from .models import (
    DestroyResult, InitResult, PollOutcome, ProvisionConfig, ProvisionResult, RecreateResult,
)
from .poll import BootstrapPoller
from .recreate import Recreator
from .up import Provisioner

__all__ = [
    "Provisioner",
    "Destroyer",
    "Initializer",
    "BootstrapPoller",
    "Recreator",
    "ProvisionConfig",
    "ProvisionResult",
    "DestroyResult",
    "InitResult",
    "RecreateResult",
    "PollOutcome",
]
