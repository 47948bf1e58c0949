"""Configuration management for the knife-solo integration harness.

Two sources feed the harness:

* ``Settings``: run switches and tuning knobs read from the environment
  (and an optional ``.env`` file). ``VERBOSE``, ``SKIP_DESTROY`` and ``USER``
  keep their historical names.
* ``CloudConfig``: AWS credentials and key pair name read from
  ``support/config.yml``.
"""

import getpass
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigError


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class Settings(BaseSettings):
    """Harness settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Run switches
    verbose: bool = Field(default=False, description="Pass -VV to knife subcommands")
    skip_destroy: bool = Field(default=False, description="Leave instances running after the run")
    user: str = Field(default_factory=_default_user, description="Owning user and SSH login")

    # Layout
    base_dir: Path = Field(default_factory=Path.cwd, description="Root of support/ and log/")

    # Cloud
    aws_region: str = Field(default="us-east-1", description="Fallback EC2 region")
    flavor_id: str = Field(default="m1.small", description="Default instance type")
    server_name_prefix: str = Field(default="knife_solo", description="Prefix of test identities")

    # Readiness
    poll_interval_seconds: float = Field(default=1.0, gt=0, description="Delay between polls")
    readiness_timeout_seconds: float = Field(
        default=600.0, gt=0, description="Deadline for running state and open port"
    )
    ready_grace_seconds: float = Field(
        default=10.0, ge=0, description="Sleep after the port opens, before using SSH"
    )
    ssh_port: int = Field(default=22, description="Control port probed for readiness")
    port_probe_timeout_seconds: float = Field(default=1.0, gt=0, description="TCP probe timeout")
    ssh_handshake_check: bool = Field(
        default=False, description="Also require an SSH handshake before the grace period"
    )

    # Cleanup
    cleanup_grace_seconds: float = Field(
        default=20.0, ge=0, description="Time to press Ctrl-C before instances are destroyed"
    )

    # External commands
    knife_command: str = Field(default="knife", description="knife executable")
    installer_command: list[str] = Field(
        default_factory=lambda: ["librarian-chef", "install"],
        description="Cookbook dependency installer",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP check timeout")

    @field_validator("base_dir")
    @classmethod
    def _absolute_base_dir(cls, value: Path) -> Path:
        # Cases change directory into their kitchen; keep paths independent of cwd.
        return value.expanduser().resolve()

    @property
    def support_dir(self) -> Path:
        return self.base_dir / "support"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "log"

    @property
    def kitchens_dir(self) -> Path:
        return self.support_dir / "kitchens"

    @property
    def config_file(self) -> Path:
        """Location of the YAML credentials file."""
        return self.support_dir / "config.yml"


class AwsCredentials(BaseModel):
    """The ``aws`` section of the credentials file."""

    access_key: str
    secret: str
    key_name: str
    region: str | None = None


class CloudConfig(BaseModel):
    """Parsed ``support/config.yml``."""

    aws: AwsCredentials
    images: dict[str, str] = Field(default_factory=dict)

    @field_validator("images", mode="before")
    @classmethod
    def _empty_images(cls, value: object) -> object:
        # An ``images:`` key with only commented entries parses as None.
        return {} if value is None else value


def load_cloud_config(path: Path) -> CloudConfig:
    """Load the credentials file.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or lacks
            one of ``aws.access_key``, ``aws.secret`` or ``aws.key_name``.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(
            f"Credentials file not found at {path}. "
            f"Copy support/config.yml.example there and fill in your AWS keys."
        ) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping with an 'aws' section")

    try:
        return CloudConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid credentials file {path}: {e}") from e


def get_settings() -> Settings:
    """Build settings from the current environment."""
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigError(f"Invalid harness settings: {e}") from e
