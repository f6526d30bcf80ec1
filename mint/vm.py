"""
Tag-based VM discovery.

AWS is the source of truth: every lookup is a fresh tag-filtered
describe_instances call and nothing is cached between calls.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .errors import AmbiguousVMError, DiscoveryError
from .tags import (
    TAG_BOOTSTRAP, TAG_PROJECT_VOLUME_GB, TAG_ROOT_VOLUME_GB, TAG_VM,
    filter_by_owner, filter_by_owner_and_vm, tags_to_map,
)

EXCLUDED_STATES = ("terminated", "shutting-down")


@dataclass
class VM:
    """A Mint-managed EC2 instance as seen by one describe call."""
    id: str
    name: str
    state: str
    instance_type: str
    public_ip: Optional[str] = None
    launch_time: Optional[datetime] = None
    bootstrap_status: str = ""
    availability_zone: str = ""
    root_volume_gb: Optional[int] = None
    project_volume_gb: Optional[int] = None
    tags: Dict[str, str] = field(default_factory=dict)


def find_vm(ec2, owner: str, vm_name: str) -> Optional[VM]:
    """
    Find the single live VM for an owner and VM name.

    Args:
        ec2: boto3 EC2 client
        owner: Friendly owner name
        vm_name: Logical VM name

    Returns:
        The VM, or None when nothing matches

    Raises:
        AmbiguousVMError: If two or more live instances match
        DiscoveryError: If the describe call fails
    """
    vms = _describe_and_parse(ec2, filter_by_owner_and_vm(owner, vm_name))

    if not vms:
        return None
    if len(vms) > 1:
        raise AmbiguousVMError(owner, vm_name, len(vms))
    return vms[0]


def list_vms(ec2, owner: str) -> List[VM]:
    """
    List all live VMs of an owner.

    Terminated and shutting-down instances are excluded.
    """
    return _describe_and_parse(ec2, filter_by_owner(owner))


def _describe_and_parse(ec2, filters: List[Dict[str, Any]]) -> List[VM]:
    try:
        response = ec2.describe_instances(Filters=filters)
    except ClientError as e:
        raise DiscoveryError(f"describe instances: {e}") from e

    vms = []
    for reservation in response.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            state = instance.get("State", {}).get("Name", "")
            if state in EXCLUDED_STATES:
                continue
            vms.append(parse_instance(instance))

    return vms


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_instance(instance: Dict[str, Any]) -> VM:
    """Convert a describe_instances entry into a VM."""
    tags = tags_to_map(instance.get("Tags"))

    return VM(
        id=instance.get("InstanceId", ""),
        name=tags.get(TAG_VM, ""),
        state=instance.get("State", {}).get("Name", ""),
        instance_type=instance.get("InstanceType", ""),
        public_ip=instance.get("PublicIpAddress"),
        launch_time=instance.get("LaunchTime"),
        bootstrap_status=tags.get(TAG_BOOTSTRAP, ""),
        availability_zone=instance.get("Placement", {}).get("AvailabilityZone", ""),
        root_volume_gb=_parse_int(tags.get(TAG_ROOT_VOLUME_GB)),
        project_volume_gb=_parse_int(tags.get(TAG_PROJECT_VOLUME_GB)),
        tags=tags,
    )
