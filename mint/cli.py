"""
Click CLI for Mint.

Commands are thin wiring: resolve the owner, build clients, call the
provisioning core and render its result.
"""

import json
import logging
import sys
from functools import partial
from typing import Any, Dict, List

import click
from botocore.exceptions import ClientError

from . import bootstrap
from .aws import (
    build_clients, call, resolve_ami, wait_instance_running, wait_instance_terminated,
    wait_volume_available,
)
from .calllog import CallLogger
from .config import load_config
from .errors import (
    BootstrapFailedError, BootstrapTimeoutError, MintError, PollCancelledError, VMNotFoundError,
)
from .identity import resolve_owner
from .provision import BootstrapPoller, Destroyer, Initializer, Provisioner, Recreator
from .provision.models import ProvisionResult
from .tags import DEFAULT_VM_NAME
from .vm import VM, find_vm, list_vms

logger = logging.getLogger(__name__)

# Poll errors on a fresh launch are advisory for the core but still fail the
# command so scripted callers see a non-zero exit.
FATAL_BOOTSTRAP_ERRORS = (BootstrapFailedError, BootstrapTimeoutError, PollCancelledError)


@click.group()
@click.option("--region", help="AWS region (default from config)")
@click.option("--vm", "vm_name", default=DEFAULT_VM_NAME, show_default=True, help="VM name")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--yes", is_flag=True, help="Skip confirmation prompts")
@click.option("--json", "output_json", is_flag=True, help="Output machine-readable JSON")
@click.pass_context
def main(ctx, region, vm_name, verbose, yes, output_json):
    """Mint - disposable development VMs on EC2."""
    try:
        config = load_config()
    except MintError as e:
        _fail(str(e))

    logging.basicConfig(
        level=logging.DEBUG if (verbose or config.debug) else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["region"] = region or config.region
    ctx.obj["vm_name"] = vm_name
    ctx.obj["yes"] = yes
    ctx.obj["json"] = output_json
    ctx.obj["call_logger"] = CallLogger(config.log_dir, debug=verbose or config.debug)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _warn(message: str) -> None:
    click.echo(f"Warning: {message}", err=True)


def _json_output(data: Any) -> None:
    click.echo(json.dumps(data, indent=None, default=str))


def _connect(ctx):
    """Build clients and resolve the calling owner."""
    clients = build_clients(ctx.obj["region"])
    owner = resolve_owner(clients.sts)
    logger.debug(f"Resolved owner {owner.name} ({owner.arn})")
    return clients, owner


def _build_provisioner(ctx, clients) -> Provisioner:
    return Provisioner(
        clients.ec2,
        resolve_ami=partial(resolve_ami, clients.ssm),
        wait_running=partial(wait_instance_running, clients.ec2),
        poll_bootstrap=BootstrapPoller(clients.ec2, call_logger=ctx.obj["call_logger"]).poll,
        call_logger=ctx.obj["call_logger"],
    )


def _vm_dict(vm: VM) -> Dict[str, Any]:
    return {
        "name": vm.name,
        "id": vm.id,
        "state": vm.state,
        "instance_type": vm.instance_type,
        "public_ip": vm.public_ip,
        "launch_time": vm.launch_time.isoformat() if vm.launch_time else None,
        "bootstrap": vm.bootstrap_status,
        "availability_zone": vm.availability_zone,
        "root_volume_gb": vm.root_volume_gb,
        "project_volume_gb": vm.project_volume_gb,
    }


def _render_provision(result: ProvisionResult, vm_name: str) -> None:
    if result.already_running:
        click.echo(f'VM "{vm_name}" is already running ({result.instance_id})')
    elif result.restarted:
        click.echo(f'Started VM "{vm_name}" ({result.instance_id})')
    else:
        click.echo(f'Launched VM "{vm_name}" ({result.instance_id})')

    if result.public_ip:
        click.echo(f"  Public IP:      {result.public_ip}")
    if result.volume_id:
        click.echo(f"  Project volume: {result.volume_id}")
    if result.reattached_volume_id:
        click.echo(f"  Re-attached:    {result.reattached_volume_id}")
    if result.bootstrap_status:
        click.echo(f"  Bootstrap:      {result.bootstrap_status}")

    if result.bootstrap_error is not None:
        _warn(str(result.bootstrap_error))


@main.command()
@click.pass_context
def init(ctx):
    """Validate prerequisites and create per-owner resources."""
    try:
        clients, owner = _connect(ctx)
        initializer = Initializer(clients.ec2, clients.efs, clients.iam, call_logger=ctx.obj["call_logger"])
        result = initializer.run(owner.name, owner.arn, ctx.obj["vm_name"])
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    for warning in result.warnings:
        _warn(warning)

    click.echo(f"Default VPC:      {result.vpc_id}")
    click.echo(f"EFS filesystem:   {result.efs_id}")
    click.echo(f"Security group:   {result.security_group_id} ({'created' if result.sg_created else 'existing'})")
    click.echo(f"EFS access point: {result.access_point_id} ({'created' if result.ap_created else 'existing'})")


@main.command()
@click.option("--no-wait", is_flag=True, help="Do not wait for bootstrap to complete")
@click.pass_context
def up(ctx, no_wait):
    """Create, start or report the VM."""
    config = ctx.obj["config"]
    vm_name = ctx.obj["vm_name"]
    try:
        clients, owner = _connect(ctx)
        efs_id = Initializer(clients.ec2, clients.efs, clients.iam).discover_efs()
        provisioner = _build_provisioner(ctx, clients)
        if no_wait:
            provisioner.poll_bootstrap = None
        result = provisioner.run(
            owner.name, owner.arn, vm_name,
            config.provision_config(bootstrap.load_template(), efs_id),
        )
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    _render_provision(result, vm_name)

    if isinstance(result.bootstrap_error, FATAL_BOOTSTRAP_ERRORS):
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show the VM's state."""
    vm_name = ctx.obj["vm_name"]
    try:
        clients, owner = _connect(ctx)
        found = find_vm(clients.ec2, owner.name, vm_name)
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    if found is None:
        if ctx.obj["json"]:
            _json_output(None)
        else:
            click.echo(f'No VM "{vm_name}" found. Run \'mint up\' to create one.')
        return

    if ctx.obj["json"]:
        _json_output(_vm_dict(found))
        return

    for key, value in _vm_dict(found).items():
        if value is not None and value != "":
            click.echo(f"{key + ':':<19} {value}")


@main.command(name="list")
@click.pass_context
def list_cmd(ctx):
    """List all of the caller's VMs."""
    try:
        clients, owner = _connect(ctx)
        vms = list_vms(clients.ec2, owner.name)
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    rows: List[Dict[str, Any]] = [_vm_dict(vm) for vm in vms]
    if ctx.obj["json"]:
        _json_output(rows)
        return

    if not rows:
        click.echo("No VMs found.")
        return

    click.echo(f"{'NAME':<16} {'ID':<21} {'STATE':<10} {'BOOTSTRAP':<10} {'IP'}")
    for row in rows:
        click.echo(
            f"{row['name']:<16} {row['id']:<21} {row['state']:<10} "
            f"{row['bootstrap'] or '-':<10} {row['public_ip'] or '-'}"
        )


@main.command()
@click.pass_context
def stop(ctx):
    """Stop the VM (volumes and Elastic IP are kept)."""
    vm_name = ctx.obj["vm_name"]
    try:
        clients, owner = _connect(ctx)
        found = find_vm(clients.ec2, owner.name, vm_name)
        if found is None:
            raise VMNotFoundError(f'no VM "{vm_name}" found for owner "{owner.name}"')
        if found.state in ("stopped", "stopping"):
            click.echo(f'VM "{vm_name}" is already {found.state}')
            return
        call(ctx.obj["call_logger"], "ec2", "StopInstances", clients.ec2.stop_instances,
             InstanceIds=[found.id])
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))
    except ClientError as e:
        _fail(f"stopping VM: {e}")

    click.echo(f'Stopping VM "{vm_name}" ({found.id})')


@main.command()
@click.pass_context
def destroy(ctx):
    """Terminate the VM and release its resources."""
    vm_name = ctx.obj["vm_name"]
    if not ctx.obj["yes"]:
        if not click.confirm(f'Destroy VM "{vm_name}" and delete its project volume?'):
            click.echo("Destroy cancelled")
            return

    try:
        clients, owner = _connect(ctx)
        destroyer = Destroyer(
            clients.ec2,
            wait_terminated=partial(wait_instance_terminated, clients.ec2),
            call_logger=ctx.obj["call_logger"],
        )
        result = destroyer.run(owner.name, vm_name, confirmed=True)
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    click.echo(f'Destroyed VM "{vm_name}" ({result.instance_id})')
    click.echo(f"  Volumes deleted:    {result.volumes_deleted}")
    click.echo(f"  Elastic IP released: {'yes' if result.eip_released else 'no'}")
    for warning in result.warnings:
        _warn(warning)


@main.command()
@click.pass_context
def recreate(ctx):
    """Replace the VM's instance, keeping its project volume."""
    config = ctx.obj["config"]
    vm_name = ctx.obj["vm_name"]
    if not ctx.obj["yes"]:
        if not click.confirm(f'Recreate VM "{vm_name}"? The root volume will be lost.'):
            click.echo("Recreate cancelled")
            return

    try:
        clients, owner = _connect(ctx)
        efs_id = Initializer(clients.ec2, clients.efs, clients.iam).discover_efs()
        recreator = Recreator(
            clients.ec2,
            _build_provisioner(ctx, clients),
            wait_volume_available=partial(wait_volume_available, clients.ec2),
            wait_terminated=partial(wait_instance_terminated, clients.ec2),
            call_logger=ctx.obj["call_logger"],
        )
        result = recreator.run(
            owner.name, owner.arn, vm_name,
            config.provision_config(bootstrap.load_template(), efs_id),
            confirmed=True,
        )
    except KeyboardInterrupt:
        _fail("cancelled by user")
    except MintError as e:
        _fail(str(e))

    click.echo(f"Replaced instance {result.old_instance_id}")
    _render_provision(result.provision, vm_name)

    if isinstance(result.provision.bootstrap_error, FATAL_BOOTSTRAP_ERRORS):
        sys.exit(1)


if __name__ == "__main__":
    main()
