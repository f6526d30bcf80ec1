"""
Tests for the Provisioner ("mint up").
"""

import pytest
from unittest.mock import MagicMock

from mint import bootstrap
from mint.errors import (
    BootstrapFailedError, BootstrapTimeoutError, BootstrapVerificationError, MintError,
    PrerequisiteError, QuotaExceededError, VolumeAZMismatchError,
)
from mint.provision.init import INSTANCE_PROFILE_NAME
from mint.provision.models import PollOutcome, ProvisionConfig
from mint.provision.up import Provisioner
from mint.tags import (
    TAG_BOOTSTRAP, TAG_COMPONENT, TAG_PENDING_ATTACH, TAG_PROJECT_VOLUME_GB, TAG_ROOT_VOLUME_GB,
    tags_to_map,
)

from awsfakes import (
    OWNER, OWNER_ARN, VM_NAME, address, client_error, fresh_ec2, instance, reservations, volume,
)


def make_config(**kwargs):
    defaults = dict(instance_type="m6i.xlarge", bootstrap_script=bootstrap.load_template(), efs_id="fs-123")
    defaults.update(kwargs)
    return ProvisionConfig(**defaults)


def make_provisioner(ec2, **kwargs):
    kwargs.setdefault("resolve_ami", MagicMock(return_value="ami-123"))
    return Provisioner(ec2, **kwargs)


class TestFreshProvision:
    """Test the launch pipeline when no VM exists."""

    def test_end_to_end(self):
        """A fresh launch creates, tags, attaches and assigns everything."""
        ec2 = fresh_ec2()
        wait_running = MagicMock()
        poll = MagicMock(return_value=PollOutcome.COMPLETE)
        provisioner = make_provisioner(ec2, wait_running=wait_running, poll_bootstrap=poll)

        result = provisioner.run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.instance_id == "i-new"
        assert result.volume_id == "vol-new"
        assert result.allocation_id == "eipalloc-new"
        assert result.public_ip == "198.51.100.1"
        assert result.restarted is False
        assert result.already_running is False
        assert result.bootstrap_status == "complete"
        assert result.bootstrap_error is None

        wait_running.assert_called_once_with("i-new")
        poll.assert_called_once_with(OWNER, VM_NAME, "i-new")
        ec2.associate_address.assert_called_once_with(AllocationId="eipalloc-new", InstanceId="i-new")

        volume_tags = tags_to_map(ec2.create_tags.call_args.kwargs["Tags"])
        assert ec2.create_tags.call_args.kwargs["Resources"] == ["vol-new"]
        assert volume_tags[TAG_COMPONENT] == "project-volume"

    def test_launch_parameters(self):
        """RunInstances carries the project volume mapping, tags and user-data."""
        ec2 = fresh_ec2()
        provisioner = make_provisioner(ec2)

        provisioner.run(OWNER, OWNER_ARN, VM_NAME, make_config(volume_size=100, volume_iops=6000))

        params = ec2.run_instances.call_args.kwargs
        assert params["ImageId"] == "ami-123"
        assert params["SubnetId"] == "subnet-a"
        assert params["SecurityGroupIds"] == ["sg-user", "sg-admin"]
        assert params["IamInstanceProfile"] == {"Name": INSTANCE_PROFILE_NAME}
        assert 'MINT_EFS_ID="fs-123"' in params["UserData"]

        mapping = params["BlockDeviceMappings"][0]
        assert mapping["DeviceName"] == "/dev/xvdf"
        assert mapping["Ebs"]["VolumeSize"] == 100
        assert mapping["Ebs"]["Iops"] == 6000
        assert mapping["Ebs"]["VolumeType"] == "gp3"
        assert mapping["Ebs"]["DeleteOnTermination"] is False

        instance_tags = tags_to_map(params["TagSpecifications"][0]["Tags"])
        assert instance_tags[TAG_BOOTSTRAP] == "pending"
        assert instance_tags[TAG_ROOT_VOLUME_GB] == "200"
        assert instance_tags[TAG_PROJECT_VOLUME_GB] == "100"

    def test_defaults_applied(self):
        """Zero sizes fall back to 50 GB / 3000 IOPS / 60 minutes."""
        ec2 = fresh_ec2()

        make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        params = ec2.run_instances.call_args.kwargs
        assert params["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 50
        assert params["BlockDeviceMappings"][0]["Ebs"]["Iops"] == 3000
        assert 'MINT_IDLE_TIMEOUT="60"' in params["UserData"]

    def test_without_poller(self):
        """Without a poller the result reports pending."""
        ec2 = fresh_ec2()

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.bootstrap_status == "pending"
        assert result.bootstrap_error is None

    def test_bdm_volume_id_fallback(self):
        """A launch response without the mapping falls back to describe."""
        ec2 = fresh_ec2()
        ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-new"}]}
        ec2.describe_instances.side_effect = [
            reservations(),
            {"Reservations": [{"Instances": [{
                "InstanceId": "i-new",
                "BlockDeviceMappings": [
                    {"DeviceName": "/dev/sda1", "Ebs": {"VolumeId": "vol-root"}},
                    {"DeviceName": "/dev/xvdf", "Ebs": {"VolumeId": "vol-late"}},
                ],
            }]}]},
        ]

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.volume_id == "vol-late"
        ec2.describe_instances.assert_called_with(InstanceIds=["i-new"])

    def test_missing_bdm_volume(self):
        ec2 = fresh_ec2()
        ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-new"}]}
        ec2.describe_instances.side_effect = [reservations(), {"Reservations": []}]

        with pytest.raises(MintError, match="mint destroy"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

    def test_preferred_az(self):
        """A preferred AZ picks the matching default subnet."""
        ec2 = fresh_ec2()
        ec2.describe_subnets.return_value = {"Subnets": [
            {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-1a"},
            {"SubnetId": "subnet-c", "AvailabilityZone": "us-east-1c"},
        ]}

        make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config(availability_zone="us-east-1c"))

        assert ec2.run_instances.call_args.kwargs["SubnetId"] == "subnet-c"


class TestPreLaunchChecks:
    """Test failures that must stop before RunInstances."""

    def test_verification_failure_before_any_mutation(self):
        ec2 = fresh_ec2()
        resolve_ami = MagicMock(return_value="ami-123")
        provisioner = make_provisioner(ec2, resolve_ami=resolve_ami)

        with pytest.raises(BootstrapVerificationError):
            provisioner.run(OWNER, OWNER_ARN, VM_NAME, make_config(bootstrap_script=b"tampered"))

        resolve_ami.assert_not_called()
        ec2.run_instances.assert_not_called()
        ec2.allocate_address.assert_not_called()

    def test_eip_quota_exhausted(self):
        """Five held addresses abort the launch with the count and ceiling."""
        held = [address(allocation_id=f"eipalloc-{i}", vm_name=f"vm{i}") for i in range(5)]
        ec2 = fresh_ec2(addresses=held)

        with pytest.raises(QuotaExceededError, match="5 of 5"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.run_instances.assert_not_called()
        ec2.allocate_address.assert_not_called()

    def test_eip_quota_below_limit(self):
        held = [address(allocation_id=f"eipalloc-{i}", vm_name=f"vm{i}") for i in range(4)]
        ec2 = fresh_ec2(addresses=held)

        make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.run_instances.assert_called_once()

    def test_reusable_address_skips_quota(self):
        """An idle address already tagged for this VM is reused, not counted."""
        held = [address(allocation_id=f"eipalloc-{i}", vm_name=f"vm{i}") for i in range(4)]
        held.append(address(allocation_id="eipalloc-mine", associated=False))
        ec2 = fresh_ec2(addresses=held)

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.allocation_id == "eipalloc-mine"
        ec2.allocate_address.assert_not_called()
        ec2.associate_address.assert_called_once_with(AllocationId="eipalloc-mine", InstanceId="i-new")

    def test_missing_security_group(self):
        ec2 = fresh_ec2()
        ec2.describe_security_groups.side_effect = [{"SecurityGroups": []}]

        with pytest.raises(PrerequisiteError, match="mint init"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.run_instances.assert_not_called()

    def test_missing_admin_security_group(self):
        ec2 = fresh_ec2()
        ec2.describe_security_groups.side_effect = [
            {"SecurityGroups": [{"GroupId": "sg-user"}]},
            {"SecurityGroups": []},
        ]

        with pytest.raises(PrerequisiteError, match="admin"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

    def test_no_default_subnets(self):
        ec2 = fresh_ec2()
        ec2.describe_subnets.return_value = {"Subnets": []}

        with pytest.raises(PrerequisiteError, match="default"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.run_instances.assert_not_called()


class TestPostLaunchFailures:
    """Test failures after RunInstances."""

    def test_launch_failure(self):
        ec2 = fresh_ec2()
        ec2.run_instances.side_effect = client_error("InsufficientInstanceCapacity")

        with pytest.raises(MintError, match="launching instance"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.allocate_address.assert_not_called()

    def test_associate_failure_points_at_destroy(self):
        """Nothing is rolled back; the error says how to clean up."""
        ec2 = fresh_ec2()
        ec2.associate_address.side_effect = client_error("InvalidAllocationID.NotFound")

        with pytest.raises(MintError, match="mint destroy"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.terminate_instances.assert_not_called()

    def test_bootstrap_failure_is_advisory(self):
        ec2 = fresh_ec2()
        poll = MagicMock(side_effect=BootstrapFailedError("i-new", "efs-mount"))

        result = make_provisioner(ec2, poll_bootstrap=poll).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.instance_id == "i-new"
        assert result.bootstrap_status == "failed"
        assert "efs-mount" in str(result.bootstrap_error)

    def test_bootstrap_timeout_is_advisory(self):
        ec2 = fresh_ec2()
        poll = MagicMock(side_effect=BootstrapTimeoutError("timed out"))

        result = make_provisioner(ec2, poll_bootstrap=poll).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.bootstrap_status == "pending"
        assert isinstance(result.bootstrap_error, BootstrapTimeoutError)
        assert result.allocation_id == "eipalloc-new"

    def test_terminated_by_operator(self):
        ec2 = fresh_ec2()
        poll = MagicMock(return_value=PollOutcome.TERMINATED)

        result = make_provisioner(ec2, poll_bootstrap=poll).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.bootstrap_status == "failed"


class TestPendingAttach:
    """Test re-attaching a volume left behind by an interrupted recreate."""

    def test_fresh_launch_attaches_pending_volume(self):
        """The mapping and the pending volume are mutually exclusive."""
        pending = volume(volume_id="vol-keep", pending_attach=True)
        ec2 = fresh_ec2(pending_volume=pending)

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert "BlockDeviceMappings" not in ec2.run_instances.call_args.kwargs
        ec2.attach_volume.assert_called_once_with(VolumeId="vol-keep", InstanceId="i-new", Device="/dev/xvdf")
        ec2.delete_tags.assert_called_once_with(Resources=["vol-keep"], Tags=[{"Key": TAG_PENDING_ATTACH}])
        assert result.volume_id == "vol-keep"
        assert result.reattached_volume_id == "vol-keep"
        ec2.create_tags.assert_not_called()

    def test_az_mismatch_refuses_attach(self):
        pending = volume(volume_id="vol-far", az="us-east-1b", pending_attach=True)
        ec2 = fresh_ec2(pending_volume=pending)

        with pytest.raises(VolumeAZMismatchError) as exc_info:
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert "vol-far" in str(exc_info.value)
        assert "mint destroy" in str(exc_info.value)
        ec2.attach_volume.assert_not_called()
        ec2.delete_tags.assert_not_called()

    def test_existing_vm_attaches_pending_volume(self):
        """A running VM picks up a leftover pending volume."""
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-live"))
        ec2.describe_volumes.return_value = {"Volumes": [volume(volume_id="vol-keep", pending_attach=True)]}

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.attach_volume.assert_called_once_with(VolumeId="vol-keep", InstanceId="i-live", Device="/dev/xvdf")
        assert result.reattached_volume_id == "vol-keep"
        ec2.run_instances.assert_not_called()

    def test_volume_already_attached_only_clears_marker(self):
        """An interrupted recovery is finished by dropping the leftover tag."""
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-live"))
        ec2.describe_volumes.return_value = {"Volumes": [
            volume(volume_id="vol-keep", state="in-use", attached_to="i-live", pending_attach=True),
        ]}
        ec2.attach_volume.side_effect = client_error("VolumeInUse")

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.attach_volume.assert_not_called()
        ec2.delete_tags.assert_called_once_with(Resources=["vol-keep"], Tags=[{"Key": TAG_PENDING_ATTACH}])
        assert result.reattached_volume_id == "vol-keep"
        assert result.already_running is True

    def test_volume_attached_elsewhere(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-live"))
        ec2.describe_volumes.return_value = {"Volumes": [
            volume(volume_id="vol-keep", state="in-use", attached_to="i-other", pending_attach=True),
        ]}

        with pytest.raises(MintError, match="i-other") as exc_info:
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert "vol-keep" in str(exc_info.value)
        ec2.attach_volume.assert_not_called()
        ec2.delete_tags.assert_not_called()

    def test_existing_vm_az_mismatch(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-live", az="us-east-1a"))
        ec2.describe_volumes.return_value = {"Volumes": [volume(volume_id="vol-far", az="us-east-1d", pending_attach=True)]}

        with pytest.raises(VolumeAZMismatchError, match="vol-far"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.attach_volume.assert_not_called()


class TestExistingVM:
    """Test the restart and no-op branches."""

    def test_stopped_vm_restarted(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-1", state="stopped"))
        ec2.describe_volumes.return_value = {"Volumes": []}

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.start_instances.assert_called_once_with(InstanceIds=["i-1"])
        assert result.restarted is True
        assert result.bootstrap_error is None
        ec2.run_instances.assert_not_called()

    def test_stopped_vm_with_failed_bootstrap(self):
        """Restart still happens; the failure is reported as advisory."""
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(
            instance(instance_id="i-1", state="stopped", bootstrap="failed"),
        )
        ec2.describe_volumes.return_value = {"Volumes": []}

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        ec2.start_instances.assert_called_once_with(InstanceIds=["i-1"])
        assert result.restarted is True
        assert "mint recreate" in str(result.bootstrap_error)

    def test_start_failure(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(state="stopped"))
        ec2.describe_volumes.return_value = {"Volumes": []}
        ec2.start_instances.side_effect = client_error("IncorrectInstanceState")

        with pytest.raises(MintError, match="starting stopped VM"):
            make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

    def test_running_vm_is_noop(self):
        """A running VM is reported as-is without any mutation."""
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(instance_id="i-1", bootstrap="pending"))
        ec2.describe_volumes.return_value = {"Volumes": []}
        verify = MagicMock()

        result = make_provisioner(ec2, verify_bootstrap=verify).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.already_running is True
        assert result.bootstrap_status == "pending"
        assert result.public_ip == "203.0.113.10"
        verify.assert_not_called()
        ec2.start_instances.assert_not_called()
        ec2.run_instances.assert_not_called()
        ec2.create_tags.assert_not_called()

    def test_running_vm_with_failed_bootstrap(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = reservations(instance(bootstrap="failed"))
        ec2.describe_volumes.return_value = {"Volumes": []}

        result = make_provisioner(ec2).run(OWNER, OWNER_ARN, VM_NAME, make_config())

        assert result.already_running is True
        assert "mint recreate" in str(result.bootstrap_error)
