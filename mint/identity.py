"""
Owner identity derived from the STS caller identity.

The owner is resolved on every command invocation and never cached.
"""

import re
from dataclasses import dataclass

from botocore.exceptions import ClientError

from .errors import MintError

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass
class Owner:
    """Owner tag values: friendly name (mint:owner) and full ARN (mint:owner-arn)."""
    name: str
    arn: str


def normalize_arn(arn: str) -> str:
    """
    Derive a friendly owner name from an IAM ARN.

    Takes the last path segment of the ARN resource, strips an @domain
    suffix, lowercases, collapses non-alphanumeric runs to "-" and trims
    leading/trailing hyphens.

    Args:
        arn: Caller ARN, e.g. arn:aws:sts::123:assumed-role/Dev/jane@corp.com

    Returns:
        Friendly name, e.g. "jane"

    Raises:
        ValueError: If the ARN is malformed or normalizes to nothing
    """
    if not arn:
        raise ValueError("empty ARN")

    parts = arn.split(":", 5)
    if len(parts) < 6:
        raise ValueError(
            f"malformed ARN: expected at least 6 colon-separated fields, got {len(parts)}"
        )

    resource = parts[5]
    if not resource:
        raise ValueError("malformed ARN: empty resource field")

    identifier = resource.split("/")[-1]
    if not identifier:
        raise ValueError("malformed ARN: empty trailing identifier")

    at = identifier.find("@")
    if at > 0:
        identifier = identifier[:at]

    identifier = _NON_ALNUM.sub("-", identifier.lower()).strip("-")

    if not identifier:
        raise ValueError(f"ARN normalized to empty string: {arn}")

    return identifier


def resolve_owner(sts) -> Owner:
    """
    Resolve the calling identity to an Owner.

    Args:
        sts: boto3 STS client

    Returns:
        Owner with friendly name and full ARN
    """
    try:
        response = sts.get_caller_identity()
    except ClientError as e:
        raise MintError(f"sts get-caller-identity: {e}") from e

    arn = response.get("Arn")
    if not arn:
        raise MintError("sts get-caller-identity returned no ARN")

    try:
        name = normalize_arn(arn)
    except ValueError as e:
        raise MintError(f"normalize ARN: {e}") from e

    return Owner(name=name, arn=arn)
