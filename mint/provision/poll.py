"""
Bootstrap completion polling.

After a fresh launch the in-VM bootstrap script reports progress through the
mint:bootstrap tag. The poller watches that tag until it reaches a terminal
value, the caller cancels, or a timeout elapses. On timeout an interactive
operator chooses to stop, terminate or leave the instance; a
non-interactive run fails instead so automation exits non-zero.
"""

import sys
import threading
import time
from typing import Any, Callable, Optional

import click
from botocore.exceptions import ClientError

from ..aws import call
from ..calllog import CallLogger
from ..errors import (
    BootstrapFailedError, BootstrapTimeoutError, MintError, PollCancelledError,
)
from ..tags import (
    BOOTSTRAP_COMPLETE, BOOTSTRAP_FAILED, TAG_BOOTSTRAP, TAG_BOOTSTRAP_FAILURE_PHASE,
)
from ..vm import VM, find_vm
from .models import PollOutcome

DEFAULT_POLL_INTERVAL = 15.0
DEFAULT_POLL_TIMEOUT = 15 * 60.0

CHOICE_STOP = "1"
CHOICE_TERMINATE = "2"
CHOICE_LEAVE = "3"


def format_elapsed(seconds: float) -> str:
    """Format a duration as "Xm Ys" (or "Ys" under a minute)."""
    total = int(round(seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def failure_phase(found: Optional[VM]) -> str:
    """Failure phase tag value, or "" for scripts that predate the tag."""
    if found is None:
        return ""
    return found.tags.get(TAG_BOOTSTRAP_FAILURE_PHASE, "")


def _stdin_is_tty() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


def _prompt_choice() -> str:
    return click.prompt(
        "Choice",
        type=click.Choice([CHOICE_STOP, CHOICE_TERMINATE, CHOICE_LEAVE]),
        show_choices=True,
    )


class BootstrapPoller:
    """
    Polls an instance's mint:bootstrap tag.

    Args:
        ec2: boto3 EC2 client
        is_interactive: Whether an operator can answer the timeout prompt
        prompt: Returns the operator's choice ("1", "2" or "3")
        echo: Progress and message sink
        interval: Seconds between checks
        timeout: Seconds before the timeout branch runs
        clock: Monotonic clock
        cancel: Event that cancels the poll when set
        call_logger: Optional structured call logger for timeout actions
    """

    def __init__(
        self,
        ec2,
        is_interactive: Optional[Callable[[], bool]] = None,
        prompt: Optional[Callable[[], str]] = None,
        echo: Optional[Callable[[str], None]] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[threading.Event] = None,
        call_logger: Optional[CallLogger] = None,
    ):
        self.ec2 = ec2
        self.is_interactive = is_interactive or _stdin_is_tty
        self.prompt = prompt or _prompt_choice
        self.echo = echo or click.echo
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self.cancel = cancel or threading.Event()
        self.call_logger = call_logger

    def _ec2(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        return call(self.call_logger, "ec2", operation, fn, **kwargs)

    def poll(self, owner: str, vm_name: str, instance_id: str) -> PollOutcome:
        """
        Wait for bootstrap to reach a terminal state.

        Args:
            owner: Friendly owner name
            vm_name: Logical VM name
            instance_id: Instance being bootstrapped

        Returns:
            PollOutcome.COMPLETE, or the operator's timeout decision

        Raises:
            BootstrapFailedError: If the instance reports failure
            BootstrapTimeoutError: On timeout without an interactive terminal
            PollCancelledError: If the caller cancels, including at the timeout prompt
            MintError: If a timeout action fails
        """
        start = self.clock()
        deadline = start + self.timeout

        try:
            found = self._check(owner, vm_name)
        except MintError:
            found = None
        if found is not None and self._is_terminal(found, instance_id):
            return PollOutcome.COMPLETE

        self.echo(f"Waiting for bootstrap... {format_elapsed(self.clock() - start)}")

        while True:
            if self.cancel.is_set():
                raise PollCancelledError("bootstrap poll cancelled")

            remaining = deadline - self.clock()
            if remaining <= 0:
                return self._handle_timeout(instance_id)

            try:
                cancelled = self.cancel.wait(min(self.interval, remaining))
            except KeyboardInterrupt as e:
                raise PollCancelledError("bootstrap poll cancelled") from e
            if cancelled:
                raise PollCancelledError("bootstrap poll cancelled")

            elapsed = format_elapsed(self.clock() - start)
            try:
                found = self._check(owner, vm_name)
            except MintError as e:
                # Transient read failures are retried on the next tick.
                self.echo(f"Waiting for bootstrap... {elapsed} (check failed: {e})")
                continue

            if self._is_terminal(found, instance_id):
                return PollOutcome.COMPLETE

            self.echo(f"Waiting for bootstrap... {elapsed}")

    def _check(self, owner: str, vm_name: str) -> VM:
        found = find_vm(self.ec2, owner, vm_name)
        if found is None:
            raise MintError(f'VM not found for owner "{owner}", vm "{vm_name}"')
        return found

    def _is_terminal(self, found: VM, instance_id: str) -> bool:
        """True on complete; raises on failed; False otherwise."""
        if found.bootstrap_status == BOOTSTRAP_COMPLETE:
            self.echo("Bootstrap complete.")
            return True
        if found.bootstrap_status == BOOTSTRAP_FAILED:
            raise BootstrapFailedError(instance_id, failure_phase(found))
        return False

    def _handle_timeout(self, instance_id: str) -> PollOutcome:
        if not self.is_interactive():
            self.echo(
                f"Bootstrap timed out. Instance {instance_id} left running; "
                f"SSH in or run 'mint status' to investigate."
            )
            raise BootstrapTimeoutError(f"bootstrap timed out for instance {instance_id}")

        self.echo("")
        self.echo("Bootstrap did not complete within the timeout period.")
        self.echo("")
        self.echo("What would you like to do?")
        self.echo("  1) Stop the instance (can restart later)")
        self.echo("  2) Terminate the instance (destroy and clean up)")
        self.echo("  3) Leave the instance running (investigate manually)")
        self.echo("")

        try:
            choice = str(self.prompt()).strip()
        except (click.Abort, KeyboardInterrupt) as e:
            raise PollCancelledError("bootstrap poll cancelled at the timeout prompt") from e
        except EOFError as e:
            raise MintError("failed to read operator input") from e

        if choice == CHOICE_STOP:
            self.echo(f"Stopping instance {instance_id}...")
            try:
                self._ec2("StopInstances", self.ec2.stop_instances, InstanceIds=[instance_id])
            except ClientError as e:
                raise MintError(f"stopping instance {instance_id}: {e}") from e
            self.echo("Instance stopped.")
            return PollOutcome.STOPPED

        if choice == CHOICE_TERMINATE:
            self.echo(f"Terminating instance {instance_id}...")
            try:
                self._ec2("TerminateInstances", self.ec2.terminate_instances, InstanceIds=[instance_id])
            except ClientError as e:
                raise MintError(f"terminating instance {instance_id}: {e}") from e

            # The in-VM script that would normally write this is being killed.
            try:
                self._ec2(
                    "CreateTags", self.ec2.create_tags,
                    Resources=[instance_id],
                    Tags=[{"Key": TAG_BOOTSTRAP, "Value": BOOTSTRAP_FAILED}],
                )
            except ClientError as e:
                raise MintError(f"tagging instance {instance_id} as failed: {e}") from e
            self.echo("Instance terminated and tagged as failed.")
            return PollOutcome.TERMINATED

        if choice == CHOICE_LEAVE:
            self.echo("Leaving instance running. SSH in to investigate.")
            return PollOutcome.LEFT_RUNNING

        raise MintError(f'invalid choice "{choice}"; expected 1, 2, or 3')
