"""
Value objects passed into and returned from the provisioning core.

They live for a single command invocation and are never persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

DEFAULT_VOLUME_SIZE_GB = 50
DEFAULT_VOLUME_IOPS = 3000
DEFAULT_IDLE_TIMEOUT_MINUTES = 60
ROOT_VOLUME_GB = 200


@dataclass
class ProvisionConfig:
    """Caller-supplied settings for a fresh provision. Zero means "default"."""
    instance_type: str
    bootstrap_script: bytes
    efs_id: str = ""
    volume_size: int = 0
    volume_iops: int = 0
    idle_timeout: int = 0
    availability_zone: Optional[str] = None  # preferred AZ for the subnet choice

    def effective_volume_size(self) -> int:
        return self.volume_size or DEFAULT_VOLUME_SIZE_GB

    def effective_volume_iops(self) -> int:
        return self.volume_iops or DEFAULT_VOLUME_IOPS

    def effective_idle_timeout(self) -> int:
        return self.idle_timeout or DEFAULT_IDLE_TIMEOUT_MINUTES


@dataclass
class ProvisionResult:
    """Outcome of Provisioner.run."""
    instance_id: str
    public_ip: Optional[str] = None
    volume_id: Optional[str] = None
    allocation_id: Optional[str] = None
    restarted: bool = False
    already_running: bool = False
    bootstrap_status: str = ""
    # Advisory only: the instance and its resources exist regardless.
    bootstrap_error: Optional[Exception] = None
    reattached_volume_id: Optional[str] = None


@dataclass
class DestroyResult:
    """Outcome of Destroyer.run. Warnings are non-fatal cleanup failures."""
    instance_id: str
    volumes_deleted: int = 0
    eip_released: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class InitResult:
    """Outcome of Initializer.run."""
    vpc_id: str
    efs_id: str
    security_group_id: str
    access_point_id: str
    sg_created: bool = False
    ap_created: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class RecreateResult:
    """Outcome of Recreator.run."""
    old_instance_id: str
    volume_id: str
    provision: ProvisionResult


class PollOutcome(Enum):
    """Terminal outcomes of a bootstrap poll that did not raise."""
    COMPLETE = "complete"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    LEFT_RUNNING = "left-running"
