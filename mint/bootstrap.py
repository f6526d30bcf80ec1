"""
Bootstrap template integrity and variable interpolation.

SCRIPT_SHA256 is pinned to the packaged scripts/bootstrap.sh at release time.
verify() checks the template only: values substituted afterwards by
interpolate() are outside what the fingerprint covers.
"""

import hashlib
from importlib import resources
from typing import Dict

from .errors import BootstrapVerificationError

SCRIPT_SHA256 = "d8f4373a3f0bdd457ed1bd428ffb446899fcb407f78e81947517ae7e6c0503ec"

PROJECT_DEVICE = "/dev/xvdf"


def load_template() -> bytes:
    """Read the packaged bootstrap template."""
    return resources.files("mint").joinpath("scripts/bootstrap.sh").read_bytes()


def verify(content: bytes) -> None:
    """
    Verify that a bootstrap template matches the pinned fingerprint.

    Args:
        content: Raw template bytes (before interpolation)

    Raises:
        BootstrapVerificationError: If content is empty or the digest differs
    """
    if not content:
        raise BootstrapVerificationError("bootstrap script is empty")

    actual = hashlib.sha256(content).hexdigest()
    if actual != SCRIPT_SHA256:
        raise BootstrapVerificationError(
            f"bootstrap script SHA256 mismatch: expected {SCRIPT_SHA256}, got {actual}"
        )


def replace_bash_var(script: str, name: str, value: str) -> str:
    """
    Replace ${name}, ${name:-default} and ${name-default} with value.

    Any other ${...} expression, including variables whose names merely
    start with name, is left for the shell.
    """
    out = []
    i = 0
    opener = "${" + name
    while i < len(script):
        if script.startswith(opener, i):
            after = i + len(opener)
            if after < len(script):
                nxt = script[after]
                if nxt == "}":
                    out.append(value)
                    i = after + 1
                    continue
                if nxt in (":", "-"):
                    close = script.find("}", after)
                    if close >= 0:
                        out.append(value)
                        i = close + 1
                        continue
        out.append(script[i])
        i += 1
    return "".join(out)


def interpolate(script: bytes, variables: Dict[str, str]) -> bytes:
    """
    Substitute Mint variables into a bootstrap script.

    Args:
        script: Template bytes
        variables: Variable name to value

    Returns:
        Rendered script bytes
    """
    rendered = script.decode("utf-8")
    for name, value in variables.items():
        rendered = replace_bash_var(rendered, name, value)
    return rendered.encode("utf-8")
