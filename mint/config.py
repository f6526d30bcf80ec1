"""
User configuration for the mint CLI.

Settings are read from <config_dir>/config.toml and then overridden by
MINT_* environment variables. The provisioning core never reads this module;
the CLI turns a MintConfig into a ProvisionConfig.
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .provision.models import ProvisionConfig

CONFIG_FILE = "config.toml"
CONFIG_DIR_ENV = "MINT_CONFIG_DIR"
ENV_PREFIX = "MINT_"


def default_config_dir() -> Path:
    """Return $MINT_CONFIG_DIR, or ~/.config/mint."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "mint"


class MintConfig(BaseModel):
    """Validated user settings."""

    model_config = ConfigDict(extra="forbid")

    region: str = "us-east-1"
    instance_type: str = "m6i.xlarge"
    volume_size_gb: int = Field(default=50, ge=50, le=16384)
    volume_iops: int = Field(default=3000, ge=3000, le=16000)
    idle_timeout_minutes: int = Field(default=60, ge=15)
    log_dir: Path = Field(default_factory=lambda: default_config_dir() / "logs")
    debug: bool = False

    def provision_config(self, bootstrap_script: bytes, efs_id: str = "") -> ProvisionConfig:
        """
        Build the launch settings for a fresh provision.

        Args:
            bootstrap_script: Raw bootstrap template bytes
            efs_id: Shared EFS filesystem id

        Returns:
            ProvisionConfig
        """
        return ProvisionConfig(
            instance_type=self.instance_type,
            bootstrap_script=bootstrap_script,
            efs_id=efs_id,
            volume_size=self.volume_size_gb,
            volume_iops=self.volume_iops,
            idle_timeout=self.idle_timeout_minutes,
        )


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for name in MintConfig.model_fields:
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def load_config(config_dir: Optional[Path] = None) -> MintConfig:
    """
    Load configuration from file and environment.

    Args:
        config_dir: Directory holding config.toml (default: default_config_dir())

    Returns:
        Validated MintConfig

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    config_dir = Path(config_dir) if config_dir is not None else default_config_dir()
    config_file = config_dir / CONFIG_FILE

    values: Dict[str, Any] = {}
    if config_file.exists():
        try:
            with open(config_file, "rb") as f:
                values = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"reading {config_file}: {e}") from e

    values.update(_env_overrides())
    values.setdefault("log_dir", config_dir / "logs")

    try:
        return MintConfig(**values)
    except ValidationError as e:
        keys = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise ConfigError(f"invalid configuration ({', '.join(keys)}): {e}") from e
