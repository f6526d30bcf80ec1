"""
Destroyer for "mint destroy".

Terminating the instance is the only mandatory outcome. Project volume and
Elastic IP cleanup is best-effort: each failure is logged and collected as a
warning on the result instead of being raised.
"""

import logging
from typing import Any, Callable, Optional

from botocore.exceptions import ClientError

from ..aws import call
from ..calllog import CallLogger
from ..errors import DestroyNotConfirmedError, MintError, VMNotFoundError
from ..tags import (
    COMPONENT_ELASTIC_IP, COMPONENT_PROJECT_VOLUME, TAG_COMPONENT,
    filter_by_owner_and_vm, tag_filter,
)
from ..vm import find_vm
from .models import DestroyResult

logger = logging.getLogger(__name__)


class Destroyer:
    """
    Terminates a VM and releases everything tagged to it.

    Args:
        ec2: boto3 EC2 client
        wait_terminated: Blocks until an instance id is terminated. When set it
            runs before any volume is touched, because EC2 detaches volumes
            asynchronously during termination.
        call_logger: Optional structured call logger
    """

    def __init__(
        self,
        ec2,
        wait_terminated: Optional[Callable[[str], None]] = None,
        call_logger: Optional[CallLogger] = None,
    ):
        self.ec2 = ec2
        self.wait_terminated = wait_terminated
        self.call_logger = call_logger

    def _ec2(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        return call(self.call_logger, "ec2", operation, fn, **kwargs)

    def run(self, owner: str, vm_name: str, confirmed: bool) -> DestroyResult:
        """
        Destroy the VM for (owner, vm_name).

        Args:
            owner: Friendly owner name
            vm_name: Logical VM name
            confirmed: Must be True; nothing is looked up otherwise

        Returns:
            DestroyResult with cleanup counts and warnings

        Raises:
            DestroyNotConfirmedError: If confirmed is False
            VMNotFoundError: If no live VM matches
            MintError: If termination or the termination wait fails
        """
        if not confirmed:
            raise DestroyNotConfirmedError("destroy not confirmed")

        found = find_vm(self.ec2, owner, vm_name)
        if found is None:
            raise VMNotFoundError(f'no VM "{vm_name}" found for owner "{owner}"')

        result = DestroyResult(instance_id=found.id)

        try:
            self._ec2("TerminateInstances", self.ec2.terminate_instances, InstanceIds=[found.id])
        except ClientError as e:
            raise MintError(f"terminating instance {found.id}: {e}") from e
        logger.info(f"Terminating instance {found.id}")

        if self.wait_terminated is not None:
            self.wait_terminated(found.id)

        self._cleanup_project_volumes(owner, vm_name, result)
        self._cleanup_elastic_ip(owner, vm_name, result)

        return result

    def _warn(self, result: DestroyResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)

    def _cleanup_project_volumes(self, owner: str, vm_name: str, result: DestroyResult) -> None:
        filters = filter_by_owner_and_vm(owner, vm_name) + [
            tag_filter(TAG_COMPONENT, COMPONENT_PROJECT_VOLUME),
        ]
        try:
            response = self.ec2.describe_volumes(Filters=filters)
        except ClientError as e:
            self._warn(result, f"failed to discover project volumes: {e}")
            return

        for volume in response.get("Volumes", []):
            volume_id = volume["VolumeId"]

            if volume.get("State") == "in-use":
                try:
                    self._ec2("DetachVolume", self.ec2.detach_volume, VolumeId=volume_id, Force=True)
                except ClientError as e:
                    # Still try the delete below.
                    self._warn(result, f"failed to detach volume {volume_id}: {e}")

            try:
                self._ec2("DeleteVolume", self.ec2.delete_volume, VolumeId=volume_id)
            except ClientError as e:
                self._warn(result, f"failed to delete volume {volume_id}: {e}")
                continue

            result.volumes_deleted += 1

    def _cleanup_elastic_ip(self, owner: str, vm_name: str, result: DestroyResult) -> None:
        filters = filter_by_owner_and_vm(owner, vm_name) + [
            tag_filter(TAG_COMPONENT, COMPONENT_ELASTIC_IP),
        ]
        try:
            response = self.ec2.describe_addresses(Filters=filters)
        except ClientError as e:
            self._warn(result, f"failed to discover Elastic IP: {e}")
            return

        for address in response.get("Addresses", []):
            allocation_id = address["AllocationId"]
            try:
                self._ec2("ReleaseAddress", self.ec2.release_address, AllocationId=allocation_id)
            except ClientError as e:
                self._warn(result, f"failed to release Elastic IP {allocation_id}: {e}")
                continue
            result.eip_released = True
