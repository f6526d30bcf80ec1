"""
Initializer for "mint init".

Validates the admin-provisioned prerequisites (default VPC, instance
profile, shared EFS) and creates the per-owner security group and EFS access
point. Both per-owner resources are discovered by tag first; an existing one
is reused as-is and never modified.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from ..aws import call, error_code
from ..calllog import CallLogger
from ..errors import DiscoveryError, MintError, PrerequisiteError
from ..tags import (
    COMPONENT_ADMIN, COMPONENT_EFS_ACCESS_POINT, COMPONENT_SECURITY_GROUP,
    TAG_COMPONENT, TAG_MINT, TAG_OWNER, TagBuilder, is_mint_resource, tag_filter, tags_to_map,
)
from .models import InitResult

logger = logging.getLogger(__name__)

# Created once per account by the admin CloudFormation stack.
INSTANCE_PROFILE_NAME = "mint-vm"

SSH_PORT = 41122
MOSH_PORT_RANGE = (60000, 61000)

POSIX_UID = 1000
POSIX_GID = 1000

ACCESS_DENIED_CODES = ("AccessDenied", "AccessDeniedException", "UnauthorizedOperation")


class Initializer:
    """
    Validates prerequisites and creates per-owner resources idempotently.

    Args:
        ec2: boto3 EC2 client
        efs: boto3 EFS client
        iam: boto3 IAM client
        call_logger: Optional structured call logger
    """

    def __init__(self, ec2, efs, iam, call_logger: Optional[CallLogger] = None):
        self.ec2 = ec2
        self.efs = efs
        self.iam = iam
        self.call_logger = call_logger

    def _call(self, service: str, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        return call(self.call_logger, service, operation, fn, **kwargs)

    def run(self, owner: str, owner_arn: str, vm_name: str) -> InitResult:
        """
        Run all init steps in order.

        Args:
            owner: Friendly owner name
            owner_arn: Full caller ARN
            vm_name: VM name recorded on the created resources' tags

        Returns:
            InitResult with discovered or created ids

        Raises:
            PrerequisiteError: If admin setup is incomplete
            MintError: If creating a per-owner resource fails
        """
        warnings = []

        vpc_id = self._validate_vpc()

        warning = self._validate_instance_profile()
        if warning:
            warnings.append(warning)

        efs_id = self.discover_efs()

        sg_id, sg_created = self._ensure_security_group(vpc_id, owner, owner_arn, vm_name)
        ap_id, ap_created = self._ensure_access_point(efs_id, owner, owner_arn, vm_name)

        return InitResult(
            vpc_id=vpc_id,
            efs_id=efs_id,
            security_group_id=sg_id,
            access_point_id=ap_id,
            sg_created=sg_created,
            ap_created=ap_created,
            warnings=warnings,
        )

    def _validate_vpc(self) -> str:
        try:
            response = self.ec2.describe_vpcs(Filters=[{"Name": "is-default", "Values": ["true"]}])
        except ClientError as e:
            raise DiscoveryError(f"describe VPCs: {e}") from e

        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise PrerequisiteError(
                "no default VPC found in this region; mint requires a default VPC. "
                "Create one with: aws ec2 create-default-vpc"
            )
        vpc_id = vpcs[0]["VpcId"]

        try:
            response = self.ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        except ClientError as e:
            raise DiscoveryError(f"describe subnets for VPC {vpc_id}: {e}") from e

        if not any(subnet.get("MapPublicIpOnLaunch") for subnet in response.get("Subnets", [])):
            raise PrerequisiteError(
                f"no public subnets found in default VPC {vpc_id}; mint requires at least "
                f"one subnet with auto-assign public IP enabled"
            )

        return vpc_id

    def _validate_instance_profile(self) -> Optional[str]:
        """Return a warning string when the check itself is not permitted."""
        try:
            self.iam.get_instance_profile(InstanceProfileName=INSTANCE_PROFILE_NAME)
        except ClientError as e:
            code = error_code(e)
            if code == "NoSuchEntity":
                raise PrerequisiteError(
                    f'instance profile "{INSTANCE_PROFILE_NAME}" not found; run the admin '
                    f"setup CloudFormation stack first"
                ) from e
            if code in ACCESS_DENIED_CODES:
                # The caller may be allowed to pass the role without being
                # allowed to read it.
                warning = (
                    f'could not verify instance profile "{INSTANCE_PROFILE_NAME}" '
                    f"(access denied); continuing"
                )
                logger.warning(warning)
                return warning
            raise MintError(f'get instance profile "{INSTANCE_PROFILE_NAME}": {e}') from e
        return None

    def discover_efs(self) -> str:
        """Return the id of the admin-tagged shared EFS filesystem."""
        try:
            paginator = self.efs.get_paginator("describe_file_systems")
            for page in paginator.paginate():
                for fs in page.get("FileSystems", []):
                    tags = tags_to_map(fs.get("Tags"))
                    if is_mint_resource(tags) and tags.get(TAG_COMPONENT) == COMPONENT_ADMIN:
                        return fs["FileSystemId"]
        except ClientError as e:
            raise DiscoveryError(f"describe EFS file systems: {e}") from e

        raise PrerequisiteError(
            "no admin EFS filesystem found; run the admin setup CloudFormation stack first"
        )

    def _ensure_security_group(self, vpc_id: str, owner: str, owner_arn: str, vm_name: str) -> Tuple[str, bool]:
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
        if groups:
            return groups[0]["GroupId"], False

        try:
            created = self._call(
                "ec2", "CreateSecurityGroup", self.ec2.create_security_group,
                GroupName=f"mint-{owner}",
                Description=f"Mint security group for {owner}",
                VpcId=vpc_id,
            )
        except ClientError as e:
            raise MintError(f"create security group: {e}") from e
        sg_id = created["GroupId"]

        try:
            self._call(
                "ec2", "AuthorizeSecurityGroupIngress", self.ec2.authorize_security_group_ingress,
                GroupId=sg_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": SSH_PORT,
                        "ToPort": SSH_PORT,
                        "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "SSH on non-standard port"}],
                    },
                    {
                        "IpProtocol": "udp",
                        "FromPort": MOSH_PORT_RANGE[0],
                        "ToPort": MOSH_PORT_RANGE[1],
                        "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "Mosh UDP range"}],
                    },
                ],
            )
        except ClientError as e:
            raise MintError(f"authorize ingress on {sg_id}: {e}") from e

        sg_tags = TagBuilder(owner, owner_arn, vm_name).with_component(COMPONENT_SECURITY_GROUP).build()
        try:
            self._call("ec2", "CreateTags", self.ec2.create_tags, Resources=[sg_id], Tags=sg_tags)
        except ClientError as e:
            raise MintError(f"tag security group {sg_id}: {e}") from e

        logger.info(f"Created security group {sg_id} for {owner}")
        return sg_id, True

    def _ensure_access_point(self, efs_id: str, owner: str, owner_arn: str, vm_name: str) -> Tuple[str, bool]:
        try:
            paginator = self.efs.get_paginator("describe_access_points")
            for page in paginator.paginate(FileSystemId=efs_id):
                for ap in page.get("AccessPoints", []):
                    tags = tags_to_map(ap.get("Tags"))
                    if (
                        is_mint_resource(tags)
                        and tags.get(TAG_OWNER) == owner
                        and tags.get(TAG_COMPONENT) == COMPONENT_EFS_ACCESS_POINT
                    ):
                        return ap["AccessPointId"], False
        except ClientError as e:
            raise DiscoveryError(f"describe access points for {efs_id}: {e}") from e

        ap_tags = TagBuilder(owner, owner_arn, vm_name).with_component(COMPONENT_EFS_ACCESS_POINT).build()
        params: Dict[str, Any] = {
            "FileSystemId": efs_id,
            "Tags": ap_tags,
            "PosixUser": {"Uid": POSIX_UID, "Gid": POSIX_GID},
            "RootDirectory": {
                "Path": f"/mint/user/{owner}",
                "CreationInfo": {
                    "OwnerUid": POSIX_UID,
                    "OwnerGid": POSIX_GID,
                    "Permissions": "755",
                },
            },
        }
        try:
            created = self._call("efs", "CreateAccessPoint", self.efs.create_access_point, **params)
        except ClientError as e:
            raise MintError(f"create access point on {efs_id}: {e}") from e

        logger.info(f"Created EFS access point {created['AccessPointId']} for {owner}")
        return created["AccessPointId"], True
