"""
Tag schema and builders for tag-based resource discovery.

Every AWS resource Mint manages carries the same base tag set. Provisioning,
discovery and teardown all go through this module so the schema has a single
definition.
"""

from typing import Dict, List, Optional

# Tag keys
TAG_MINT = "mint"
TAG_COMPONENT = "mint:component"
TAG_VM = "mint:vm"
TAG_OWNER = "mint:owner"
TAG_OWNER_ARN = "mint:owner-arn"
TAG_BOOTSTRAP = "mint:bootstrap"
TAG_BOOTSTRAP_FAILURE_PHASE = "mint:bootstrap-failure-phase"
TAG_PENDING_ATTACH = "mint:pending-attach"
TAG_NAME = "Name"
TAG_ROOT_VOLUME_GB = "mint:root-volume-gb"
TAG_PROJECT_VOLUME_GB = "mint:project-volume-gb"

# mint:component values
COMPONENT_INSTANCE = "instance"
COMPONENT_PROJECT_VOLUME = "project-volume"
COMPONENT_SECURITY_GROUP = "security-group"
COMPONENT_ELASTIC_IP = "elastic-ip"
COMPONENT_EFS_ACCESS_POINT = "efs-access-point"
COMPONENT_ADMIN = "admin"

# mint:bootstrap values
BOOTSTRAP_PENDING = "pending"
BOOTSTRAP_COMPLETE = "complete"
BOOTSTRAP_FAILED = "failed"

NAME_PREFIX = "mint"
DEFAULT_VM_NAME = "default"


def display_name(owner: str, vm_name: str) -> str:
    """
    Build the Name tag value for a resource.

    Args:
        owner: Friendly owner name
        vm_name: Logical VM name

    Returns:
        Name in the form mint/<owner>/<vm-name>
    """
    return f"{NAME_PREFIX}/{owner}/{vm_name}"


class TagBuilder:
    """
    Builds the tag set for a Mint resource.

    Base tags (marker, owner, owner ARN, vm, Name) are always present.
    Component and bootstrap tags are added through the fluent setters.
    """

    def __init__(self, owner: str, owner_arn: str, vm_name: str):
        self.owner = owner
        self.owner_arn = owner_arn
        self.vm_name = vm_name
        self.component: Optional[str] = None
        self.bootstrap: Optional[str] = None

    def with_component(self, component: str) -> "TagBuilder":
        self.component = component
        return self

    def with_bootstrap(self, status: str) -> "TagBuilder":
        self.bootstrap = status
        return self

    def as_dict(self) -> Dict[str, str]:
        """Return the tag set as a key/value mapping."""
        tags = {
            TAG_MINT: "true",
            TAG_OWNER: self.owner,
            TAG_OWNER_ARN: self.owner_arn,
            TAG_VM: self.vm_name,
            TAG_NAME: display_name(self.owner, self.vm_name),
        }

        if self.component:
            tags[TAG_COMPONENT] = self.component

        if self.bootstrap:
            tags[TAG_BOOTSTRAP] = self.bootstrap

        return tags

    def build(self) -> List[Dict[str, str]]:
        """Return the tag set in the boto3 [{"Key": ..., "Value": ...}] shape."""
        return to_tag_list(self.as_dict())


def to_tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a mapping into a boto3 tag list."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def tags_to_map(tag_list: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    """
    Convert a boto3 tag list into a dictionary.

    Args:
        tag_list: Tags as returned by describe calls (may be None)

    Returns:
        Dictionary of tag key to value
    """
    if not tag_list:
        return {}
    return {tag["Key"]: tag.get("Value", "") for tag in tag_list}


def is_mint_resource(tags: Dict[str, str]) -> bool:
    """
    Check if a resource is managed by Mint.

    Only the managed-by marker counts; a resource named like a Mint resource
    but lacking the marker is not ours.
    """
    return tags.get(TAG_MINT) == "true"


def tag_filter(key: str, value: str) -> Dict[str, object]:
    """Build a single EC2 tag filter."""
    return {"Name": f"tag:{key}", "Values": [value]}


def filter_by_owner(owner: str) -> List[Dict[str, object]]:
    """EC2 filters matching every Mint resource of an owner."""
    return [
        tag_filter(TAG_MINT, "true"),
        tag_filter(TAG_OWNER, owner),
    ]


def filter_by_owner_and_vm(owner: str, vm_name: str) -> List[Dict[str, object]]:
    """EC2 filters matching Mint resources of an owner for one VM."""
    return [
        tag_filter(TAG_MINT, "true"),
        tag_filter(TAG_OWNER, owner),
        tag_filter(TAG_VM, vm_name),
    ]
