"""
Provisioner for "mint up".

Decides between a fresh launch, a restart of a stopped VM and a no-op for a
running one. A fresh launch verifies the bootstrap template, launches the
instance with its project volume, attaches or repairs the volume, assigns an
Elastic IP and optionally waits for bootstrap to finish.

Nothing launched is rolled back: when a step after RunInstances fails the
error says so and cleanup is left to "mint destroy".
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from .. import bootstrap
from ..aws import call
from ..calllog import CallLogger
from ..errors import (
    BootstrapFailedError, DiscoveryError, MintError, PrerequisiteError,
    QuotaExceededError, VolumeAZMismatchError,
)
from ..tags import (
    BOOTSTRAP_COMPLETE, BOOTSTRAP_FAILED, BOOTSTRAP_PENDING,
    COMPONENT_ADMIN, COMPONENT_ELASTIC_IP, COMPONENT_INSTANCE,
    COMPONENT_PROJECT_VOLUME, COMPONENT_SECURITY_GROUP,
    TAG_COMPONENT, TAG_MINT, TAG_OWNER, TAG_PENDING_ATTACH,
    TAG_PROJECT_VOLUME_GB, TAG_ROOT_VOLUME_GB, TAG_VM,
    TagBuilder, filter_by_owner, filter_by_owner_and_vm, tag_filter, tags_to_map,
    to_tag_list,
)
from ..vm import VM, find_vm
from .init import INSTANCE_PROFILE_NAME
from .models import PollOutcome, ProvisionConfig, ProvisionResult, ROOT_VOLUME_GB

logger = logging.getLogger(__name__)

DEFAULT_EIP_LIMIT = 5

EIP_CONSOLE_URL = "https://console.aws.amazon.com/vpc/home#Addresses:"

PollFunc = Callable[[str, str, str], PollOutcome]


class Provisioner:
    """
    Runs the "mint up" flow against injected AWS clients.

    Args:
        ec2: boto3 EC2 client
        resolve_ami: Returns the AMI id to launch
        verify_bootstrap: Template integrity check, raises on mismatch
        wait_running: Blocks until an instance id is running (skipped when None)
        poll_bootstrap: Called as poll(owner, vm_name, instance_id) after a
            fresh launch; its failures are recorded on the result
        call_logger: Optional structured call logger
        eip_limit: Per-owner Elastic IP ceiling
    """

    def __init__(
        self,
        ec2,
        resolve_ami: Callable[[], str],
        verify_bootstrap: Callable[[bytes], None] = bootstrap.verify,
        wait_running: Optional[Callable[[str], None]] = None,
        poll_bootstrap: Optional[PollFunc] = None,
        call_logger: Optional[CallLogger] = None,
        eip_limit: int = DEFAULT_EIP_LIMIT,
    ):
        self.ec2 = ec2
        self.resolve_ami = resolve_ami
        self.verify_bootstrap = verify_bootstrap
        self.wait_running = wait_running
        self.poll_bootstrap = poll_bootstrap
        self.call_logger = call_logger
        self.eip_limit = eip_limit

    def _ec2(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        return call(self.call_logger, "ec2", operation, fn, **kwargs)

    def run(self, owner: str, owner_arn: str, vm_name: str, config: ProvisionConfig) -> ProvisionResult:
        """
        Provision, restart or report the VM for (owner, vm_name).

        Args:
            owner: Friendly owner name
            owner_arn: Full caller ARN
            vm_name: Logical VM name
            config: Launch settings (only used for a fresh launch)

        Returns:
            ProvisionResult; bootstrap problems are reported in bootstrap_error

        Raises:
            MintError: On any abortive failure
        """
        existing = find_vm(self.ec2, owner, vm_name)
        if existing is not None:
            return self._handle_existing_vm(existing, owner, vm_name)

        # Everything up to run_instances is read-only, so any failure here
        # leaves nothing behind.
        self.verify_bootstrap(config.bootstrap_script)

        ami_id = self.resolve_ami()
        self._check_eip_quota(owner, vm_name)
        user_sg_id = self._find_security_group(owner)
        admin_sg_id = self._find_admin_security_group()
        subnet_id, az = self._find_subnet(config.availability_zone)
        pending = self._find_pending_attach_volume(owner, vm_name)

        instance_id, bdm_volume_id = self._launch_instance(
            ami_id, config, user_sg_id, admin_sg_id, subnet_id,
            owner, owner_arn, vm_name, create_volume=pending is None,
        )
        logger.info(f"Launched instance {instance_id} in {az}")

        if self.wait_running is not None:
            self.wait_running(instance_id)

        if pending is not None:
            volume_id = self._attach_pending_volume(pending, instance_id, az)
        else:
            volume_id = bdm_volume_id or self._get_bdm_volume_id(instance_id)
            self._tag_volume(volume_id, instance_id, owner, owner_arn, vm_name)

        allocation_id, public_ip = self._allocate_and_associate_eip(instance_id, owner, owner_arn, vm_name)

        result = ProvisionResult(
            instance_id=instance_id,
            public_ip=public_ip,
            volume_id=volume_id,
            allocation_id=allocation_id,
            bootstrap_status=BOOTSTRAP_PENDING,
            reattached_volume_id=volume_id if pending is not None else None,
        )

        if self.poll_bootstrap is not None:
            try:
                outcome = self.poll_bootstrap(owner, vm_name, instance_id)
            except BootstrapFailedError as e:
                result.bootstrap_status = BOOTSTRAP_FAILED
                result.bootstrap_error = e
            except MintError as e:
                result.bootstrap_error = e
            else:
                if outcome == PollOutcome.COMPLETE:
                    result.bootstrap_status = BOOTSTRAP_COMPLETE
                elif outcome == PollOutcome.TERMINATED:
                    result.bootstrap_status = BOOTSTRAP_FAILED

        return result

    # ------------------------------------------------------------------
    # Existing VM
    # ------------------------------------------------------------------

    def _handle_existing_vm(self, existing: VM, owner: str, vm_name: str) -> ProvisionResult:
        result = ProvisionResult(
            instance_id=existing.id,
            public_ip=existing.public_ip,
            bootstrap_status=existing.bootstrap_status,
        )

        # A volume still marked pending-attach means an earlier recreate died
        # between detach and re-attach. Finish the job on the live instance.
        if existing.state in ("running", "stopped"):
            pending = self._find_pending_attach_volume(owner, vm_name)
            if pending is not None:
                result.reattached_volume_id = self._attach_pending_volume(
                    pending, existing.id, existing.availability_zone,
                )
                result.volume_id = result.reattached_volume_id

        if existing.state == "stopped":
            try:
                self._ec2("StartInstances", self.ec2.start_instances, InstanceIds=[existing.id])
            except ClientError as e:
                raise MintError(f"starting stopped VM {existing.id}: {e}") from e
            logger.info(f"Started stopped VM {existing.id}")
            result.restarted = True
            if existing.bootstrap_status == BOOTSTRAP_FAILED:
                result.bootstrap_error = MintError(
                    f'VM "{existing.name}" has a previously failed bootstrap; '
                    f"run 'mint recreate' to recover"
                )
            return result

        # Running (or transitional): report the tag as-is so callers never
        # read "no error" as "bootstrap finished".
        result.already_running = True
        if existing.bootstrap_status == BOOTSTRAP_FAILED:
            result.bootstrap_error = MintError(
                f'VM "{existing.name}" bootstrap failed; run \'mint recreate\' to rebuild'
            )
        return result

    # ------------------------------------------------------------------
    # Pre-launch checks
    # ------------------------------------------------------------------

    def _check_eip_quota(self, owner: str, vm_name: str) -> None:
        try:
            response = self._ec2("DescribeAddresses", self.ec2.describe_addresses,
                                 Filters=filter_by_owner(owner))
        except ClientError as e:
            raise MintError(f"checking EIP quota: {e}") from e

        addresses = response.get("Addresses", [])
        if self._reusable_address(addresses, vm_name) is not None:
            return

        count = len(addresses)
        if count >= self.eip_limit:
            raise QuotaExceededError(
                f"EIP quota exceeded: you have {count} of {self.eip_limit} allowed Elastic IPs. "
                f"Release unused EIPs at {EIP_CONSOLE_URL} "
                f"or run 'mint destroy' on unused VMs to free allocations"
            )

    def _find_security_group(self, owner: str) -> str:
        filters = [
            tag_filter(TAG_MINT, "true"),
            tag_filter(TAG_OWNER, owner),
            tag_filter(TAG_COMPONENT, COMPONENT_SECURITY_GROUP),
        ]
        try:
            response = self.ec2.describe_security_groups(Filters=filters)
        except ClientError as e:
            raise DiscoveryError(f"describe security groups: {e}") from e

        groups = response.get("SecurityGroups", [])
        if not groups:
            raise PrerequisiteError(
                f"no security group found with tags mint:owner={owner}, "
                f"mint:component={COMPONENT_SECURITY_GROUP}; run 'mint init' first"
            )
        return groups[0]["GroupId"]

    def _find_admin_security_group(self) -> str:
        filters = [
            tag_filter(TAG_MINT, "true"),
            tag_filter(TAG_COMPONENT, COMPONENT_ADMIN),
        ]
        try:
            response = self.ec2.describe_security_groups(Filters=filters)
        except ClientError as e:
            raise DiscoveryError(f"describe admin security groups: {e}") from e

        groups = response.get("SecurityGroups", [])
        if not groups:
            raise PrerequisiteError(
                "no admin security group found; run the admin setup CloudFormation stack first"
            )
        return groups[0]["GroupId"]

    def _find_subnet(self, preferred_az: Optional[str] = None) -> Tuple[str, str]:
        try:
            response = self.ec2.describe_subnets(
                Filters=[{"Name": "default-for-az", "Values": ["true"]}]
            )
        except ClientError as e:
            raise DiscoveryError(f"describe subnets: {e}") from e

        subnets = response.get("Subnets", [])
        if not subnets:
            raise PrerequisiteError(
                "no default subnets found; mint requires a default VPC with subnets. "
                "Create one with: aws ec2 create-default-vpc"
            )

        chosen = subnets[0]
        if preferred_az:
            for subnet in subnets:
                if subnet.get("AvailabilityZone") == preferred_az:
                    chosen = subnet
                    break
            else:
                logger.warning(f"No default subnet in {preferred_az}; using {chosen.get('AvailabilityZone')}")

        return chosen["SubnetId"], chosen.get("AvailabilityZone", "")

    def _find_pending_attach_volume(self, owner: str, vm_name: str) -> Optional[Dict[str, Any]]:
        filters = filter_by_owner_and_vm(owner, vm_name) + [
            tag_filter(TAG_COMPONENT, COMPONENT_PROJECT_VOLUME),
            tag_filter(TAG_PENDING_ATTACH, "true"),
        ]
        try:
            response = self.ec2.describe_volumes(Filters=filters)
        except ClientError as e:
            raise DiscoveryError(f"describe pending-attach volumes: {e}") from e

        volumes = response.get("Volumes", [])
        if not volumes:
            return None
        return volumes[0]

    # ------------------------------------------------------------------
    # Launch and post-launch steps
    # ------------------------------------------------------------------

    def _launch_instance(
        self,
        ami_id: str,
        config: ProvisionConfig,
        user_sg_id: str,
        admin_sg_id: str,
        subnet_id: str,
        owner: str,
        owner_arn: str,
        vm_name: str,
        create_volume: bool,
    ) -> Tuple[str, Optional[str]]:
        user_data = bootstrap.interpolate(config.bootstrap_script, {
            "MINT_EFS_ID": config.efs_id,
            "MINT_PROJECT_DEV": bootstrap.PROJECT_DEVICE,
            "MINT_VM_NAME": vm_name,
            "MINT_IDLE_TIMEOUT": str(config.effective_idle_timeout()),
        })

        instance_tags = (
            TagBuilder(owner, owner_arn, vm_name)
            .with_component(COMPONENT_INSTANCE)
            .with_bootstrap(BOOTSTRAP_PENDING)
            .as_dict()
        )
        instance_tags[TAG_ROOT_VOLUME_GB] = str(ROOT_VOLUME_GB)
        instance_tags[TAG_PROJECT_VOLUME_GB] = str(config.effective_volume_size())

        params: Dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": config.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "SubnetId": subnet_id,
            "SecurityGroupIds": [user_sg_id, admin_sg_id],
            "UserData": user_data.decode("utf-8"),
            "IamInstanceProfile": {"Name": INSTANCE_PROFILE_NAME},
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": to_tag_list(instance_tags)},
            ],
        }

        # Creating the project volume in the same call means it is attached
        # before user-data reaches the mount step.
        if create_volume:
            params["BlockDeviceMappings"] = [
                {
                    "DeviceName": bootstrap.PROJECT_DEVICE,
                    "Ebs": {
                        "VolumeSize": config.effective_volume_size(),
                        "VolumeType": "gp3",
                        "Iops": config.effective_volume_iops(),
                        "DeleteOnTermination": False,
                    },
                }
            ]

        try:
            response = self._ec2("RunInstances", self.ec2.run_instances, **params)
        except ClientError as e:
            raise MintError(f"launching instance: {e}") from e

        instances = response.get("Instances", [])
        if not instances:
            raise MintError("launching instance: run instances returned no instances")

        instance = instances[0]
        bdm_volume_id = None
        if create_volume:
            bdm_volume_id = _find_bdm_volume_id(instance.get("BlockDeviceMappings", []))

        return instance["InstanceId"], bdm_volume_id

    def _get_bdm_volume_id(self, instance_id: str) -> str:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            raise MintError(
                f"getting project volume ID for instance {instance_id}: {e}; "
                f"run 'mint destroy' to clean up"
            ) from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                volume_id = _find_bdm_volume_id(instance.get("BlockDeviceMappings", []))
                if volume_id:
                    return volume_id

        raise MintError(
            f"block device {bootstrap.PROJECT_DEVICE} not found on instance {instance_id}; "
            f"run 'mint destroy' to clean up"
        )

    def _tag_volume(self, volume_id: str, instance_id: str, owner: str, owner_arn: str, vm_name: str) -> None:
        volume_tags = TagBuilder(owner, owner_arn, vm_name).with_component(COMPONENT_PROJECT_VOLUME).build()
        try:
            self._ec2("CreateTags", self.ec2.create_tags, Resources=[volume_id], Tags=volume_tags)
        except ClientError as e:
            raise MintError(
                f"tagging project volume {volume_id} of instance {instance_id}: {e}; "
                f"run 'mint destroy' to clean up"
            ) from e

    def _attach_pending_volume(self, volume: Dict[str, Any], instance_id: str, instance_az: str) -> str:
        volume_id = volume["VolumeId"]
        volume_az = volume.get("AvailabilityZone", "")

        if volume_az != instance_az:
            raise VolumeAZMismatchError(
                f"pending-attach volume {volume_id} is in {volume_az} but instance "
                f"{instance_id} is in {instance_az}; run 'mint destroy' and start fresh "
                f"to resolve this AZ mismatch"
            )

        attached_to = [a.get("InstanceId") for a in volume.get("Attachments", []) if a.get("InstanceId")]
        if instance_id in attached_to:
            # Interrupted before the marker was cleared; only the tag is left.
            logger.info(f"Volume {volume_id} already attached to {instance_id}; clearing pending-attach tag")
        elif attached_to or volume.get("State") == "in-use":
            raise MintError(
                f"pending-attach volume {volume_id} is attached to "
                f"{', '.join(attached_to) or 'another instance'}, not {instance_id}; "
                f"detach it or run 'mint destroy' to clean up"
            )
        else:
            try:
                self._ec2("AttachVolume", self.ec2.attach_volume,
                          VolumeId=volume_id, InstanceId=instance_id, Device=bootstrap.PROJECT_DEVICE)
            except ClientError as e:
                raise MintError(f"attaching pending-attach volume {volume_id} to {instance_id}: {e}") from e

        try:
            self._ec2("DeleteTags", self.ec2.delete_tags,
                      Resources=[volume_id], Tags=[{"Key": TAG_PENDING_ATTACH}])
        except ClientError as e:
            raise MintError(f"removing pending-attach tag from {volume_id}: {e}") from e

        logger.info(f"Re-attached project volume {volume_id} to {instance_id}")
        return volume_id

    @staticmethod
    def _reusable_address(addresses: List[Dict[str, Any]], vm_name: str) -> Optional[Dict[str, Any]]:
        for address in addresses:
            tags = tags_to_map(address.get("Tags"))
            if (
                tags.get(TAG_VM) == vm_name
                and tags.get(TAG_COMPONENT) == COMPONENT_ELASTIC_IP
                and not address.get("AssociationId")
            ):
                return address
        return None

    def _allocate_and_associate_eip(
        self, instance_id: str, owner: str, owner_arn: str, vm_name: str,
    ) -> Tuple[str, str]:
        try:
            response = self._ec2(
                "DescribeAddresses", self.ec2.describe_addresses,
                Filters=filter_by_owner_and_vm(owner, vm_name)
                + [tag_filter(TAG_COMPONENT, COMPONENT_ELASTIC_IP)],
            )
            reusable = self._reusable_address(response.get("Addresses", []), vm_name)

            if reusable is not None:
                allocation_id = reusable["AllocationId"]
                public_ip = reusable.get("PublicIp", "")
                logger.info(f"Reusing Elastic IP {public_ip} ({allocation_id})")
            else:
                eip_tags = TagBuilder(owner, owner_arn, vm_name).with_component(COMPONENT_ELASTIC_IP).build()
                allocated = self._ec2(
                    "AllocateAddress", self.ec2.allocate_address,
                    Domain="vpc",
                    TagSpecifications=[{"ResourceType": "elastic-ip", "Tags": eip_tags}],
                )
                allocation_id = allocated["AllocationId"]
                public_ip = allocated.get("PublicIp", "")
        except ClientError as e:
            raise MintError(
                f"allocating Elastic IP for {instance_id}: {e}; run 'mint destroy' to clean up"
            ) from e

        try:
            self._ec2("AssociateAddress", self.ec2.associate_address,
                      AllocationId=allocation_id, InstanceId=instance_id)
        except ClientError as e:
            raise MintError(
                f"associating Elastic IP {allocation_id} to {instance_id}: {e}; "
                f"run 'mint destroy' to clean up"
            ) from e

        return allocation_id, public_ip


def _find_bdm_volume_id(mappings: List[Dict[str, Any]]) -> Optional[str]:
    for mapping in mappings:
        if mapping.get("DeviceName") == bootstrap.PROJECT_DEVICE and mapping.get("Ebs"):
            volume_id = mapping["Ebs"].get("VolumeId")
            if volume_id:
                return volume_id
    return None
