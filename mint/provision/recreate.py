"""
Recreator for "mint recreate".

Replaces a VM's instance while keeping its project volume. The volume is
marked mint:pending-attach before it is detached, so an interrupted recreate
is finished by the next "mint up": the Provisioner attaches any volume that
still carries the marker.
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from ..aws import call
from ..calllog import CallLogger
from ..errors import DestroyNotConfirmedError, DiscoveryError, MintError, VMNotFoundError
from ..tags import (
    COMPONENT_PROJECT_VOLUME, TAG_COMPONENT, TAG_PENDING_ATTACH,
    filter_by_owner_and_vm, tag_filter,
)
from ..vm import find_vm
from .models import ProvisionConfig, RecreateResult
from .up import Provisioner

logger = logging.getLogger(__name__)


class Recreator:
    """
    Rebuilds a running VM around its existing project volume.

    Args:
        ec2: boto3 EC2 client
        provisioner: Provisioner used to launch the replacement instance
        wait_volume_available: Blocks until a volume id is detached
        wait_terminated: Blocks until an instance id is terminated
        call_logger: Optional structured call logger
    """

    def __init__(
        self,
        ec2,
        provisioner: Provisioner,
        wait_volume_available: Optional[Callable[[str], None]] = None,
        wait_terminated: Optional[Callable[[str], None]] = None,
        call_logger: Optional[CallLogger] = None,
    ):
        self.ec2 = ec2
        self.provisioner = provisioner
        self.wait_volume_available = wait_volume_available
        self.wait_terminated = wait_terminated
        self.call_logger = call_logger

    def _ec2(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        return call(self.call_logger, "ec2", operation, fn, **kwargs)

    def run(
        self,
        owner: str,
        owner_arn: str,
        vm_name: str,
        config: ProvisionConfig,
        confirmed: bool,
    ) -> RecreateResult:
        """
        Replace the VM's instance, keeping the project volume.

        Args:
            owner: Friendly owner name
            owner_arn: Full caller ARN
            vm_name: Logical VM name
            config: Launch settings for the replacement instance
            confirmed: Must be True; nothing is looked up otherwise

        Returns:
            RecreateResult with the old instance id and the new provision

        Raises:
            DestroyNotConfirmedError: If confirmed is False
            VMNotFoundError: If no live VM matches
            MintError: If the VM is not running or any step fails
        """
        if not confirmed:
            raise DestroyNotConfirmedError("recreate not confirmed")

        found = find_vm(self.ec2, owner, vm_name)
        if found is None:
            raise VMNotFoundError(f'no VM "{vm_name}" found for owner "{owner}"')
        if found.state != "running":
            raise MintError(
                f'VM "{vm_name}" is {found.state}; recreate requires a running VM '
                f"(run 'mint up' first)"
            )

        volume = self._find_project_volume(owner, vm_name, found.id)
        volume_id = volume["VolumeId"]
        volume_az = volume.get("AvailabilityZone", "")

        # The marker goes on before anything destructive happens.
        try:
            self._ec2("CreateTags", self.ec2.create_tags,
                      Resources=[volume_id], Tags=[{"Key": TAG_PENDING_ATTACH, "Value": "true"}])
        except ClientError as e:
            raise MintError(f"tagging volume {volume_id} as pending-attach: {e}") from e

        try:
            self._ec2("StopInstances", self.ec2.stop_instances, InstanceIds=[found.id])
        except ClientError as e:
            raise MintError(f"stopping instance {found.id}: {e}") from e
        logger.info(f"Stopping instance {found.id}")

        try:
            self._ec2("DetachVolume", self.ec2.detach_volume,
                      VolumeId=volume_id, InstanceId=found.id, Force=True)
        except ClientError as e:
            raise MintError(
                f"detaching volume {volume_id} from {found.id}: {e}; "
                f"run 'mint up' to re-attach it"
            ) from e

        if self.wait_volume_available is not None:
            self.wait_volume_available(volume_id)

        try:
            self._ec2("TerminateInstances", self.ec2.terminate_instances, InstanceIds=[found.id])
        except ClientError as e:
            raise MintError(f"terminating instance {found.id}: {e}") from e
        logger.info(f"Terminating instance {found.id}")

        if self.wait_terminated is not None:
            self.wait_terminated(found.id)

        launch_config = dataclasses.replace(config, availability_zone=volume_az or None)
        provision = self.provisioner.run(owner, owner_arn, vm_name, launch_config)

        return RecreateResult(old_instance_id=found.id, volume_id=volume_id, provision=provision)

    def _find_project_volume(self, owner: str, vm_name: str, instance_id: str) -> Dict[str, Any]:
        filters = filter_by_owner_and_vm(owner, vm_name) + [
            tag_filter(TAG_COMPONENT, COMPONENT_PROJECT_VOLUME),
        ]
        try:
            response = self.ec2.describe_volumes(Filters=filters)
        except ClientError as e:
            raise DiscoveryError(f"describe project volumes: {e}") from e

        volumes = response.get("Volumes", [])
        for volume in volumes:
            for attachment in volume.get("Attachments", []):
                if attachment.get("InstanceId") == instance_id:
                    return volume
        if volumes:
            return volumes[0]

        raise MintError(f'no project volume found for VM "{vm_name}"; run \'mint destroy\' and start fresh')
