"""
Thin helpers around the boto3 clients Mint talks to.

The provisioning core receives boto3 clients (or test doubles with the same
method names) as constructor arguments; nothing in the core creates clients
on its own.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from .calllog import CallLogger
from .errors import MintError

logger = logging.getLogger(__name__)

# Public SSM parameter published by Canonical for the current Ubuntu 24.04 AMI.
UBUNTU_AMI_PARAMETER = (
    "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id"
)

DEFAULT_WAIT_TIMEOUT = 300
WAIT_DELAY = 5


@dataclass
class AWSClients:
    """boto3 clients for one command invocation."""
    ec2: Any
    efs: Any
    iam: Any
    ssm: Any
    sts: Any
    region: str


def build_clients(region: str, profile: Optional[str] = None) -> AWSClients:
    """
    Create all clients from a single boto3 session.

    Args:
        region: AWS region
        profile: Optional named profile from the shared credentials file

    Returns:
        AWSClients bundle
    """
    session = boto3.session.Session(profile_name=profile, region_name=region)
    return AWSClients(
        ec2=session.client("ec2"),
        efs=session.client("efs"),
        iam=session.client("iam"),
        ssm=session.client("ssm"),
        sts=session.client("sts"),
        region=region,
    )


def error_code(exc: BaseException) -> str:
    """Return the AWS error code of a ClientError, or "" for anything else."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def call(call_logger: Optional[CallLogger], service: str, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
    """
    Invoke a provider call and report its timing to the call logger.

    The logger never affects control flow: the call's result is returned and
    its exception re-raised unchanged.
    """
    start = time.monotonic()
    try:
        result = fn(**kwargs)
    except Exception as e:
        if call_logger is not None:
            call_logger.log(service, operation, time.monotonic() - start, e)
        raise
    if call_logger is not None:
        call_logger.log(service, operation, time.monotonic() - start, None)
    return result


def resolve_ami(ssm) -> str:
    """
    Resolve the current Ubuntu 24.04 AMI id.

    Args:
        ssm: boto3 SSM client

    Returns:
        AMI id

    Raises:
        MintError: If the parameter cannot be read
    """
    try:
        response = ssm.get_parameter(Name=UBUNTU_AMI_PARAMETER)
    except ClientError as e:
        raise MintError(f"ssm get-parameter {UBUNTU_AMI_PARAMETER}: {e}") from e

    value = response.get("Parameter", {}).get("Value")
    if not value:
        raise MintError(f"ssm get-parameter: empty value for {UBUNTU_AMI_PARAMETER}")
    return value


def _wait(client, waiter_name: str, description: str, timeout: int, **kwargs) -> None:
    max_attempts = max(1, timeout // WAIT_DELAY)
    try:
        client.get_waiter(waiter_name).wait(
            WaiterConfig={"Delay": WAIT_DELAY, "MaxAttempts": max_attempts},
            **kwargs,
        )
    except WaiterError as e:
        raise MintError(f"waiting for {description}: {e}") from e


def wait_instance_running(ec2, instance_id: str, timeout: int = DEFAULT_WAIT_TIMEOUT) -> None:
    """Block until the instance is running or the timeout elapses."""
    logger.info(f"Waiting for instance {instance_id} to be running")
    _wait(ec2, "instance_running", f"instance {instance_id} to be running", timeout,
          InstanceIds=[instance_id])


def wait_instance_terminated(ec2, instance_id: str, timeout: int = DEFAULT_WAIT_TIMEOUT) -> None:
    """Block until the instance is terminated or the timeout elapses."""
    logger.info(f"Waiting for instance {instance_id} to terminate")
    _wait(ec2, "instance_terminated", f"instance {instance_id} to terminate", timeout,
          InstanceIds=[instance_id])


def wait_volume_available(ec2, volume_id: str, timeout: int = DEFAULT_WAIT_TIMEOUT) -> None:
    """Block until the volume is available (detached) or the timeout elapses."""
    logger.info(f"Waiting for volume {volume_id} to become available")
    _wait(ec2, "volume_available", f"volume {volume_id} to become available", timeout,
          VolumeIds=[volume_id])
