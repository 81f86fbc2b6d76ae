"""Configuration management for the snapsync backup system."""

from __future__ import annotations

import posixpath
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

# Name of the rotations, including strftime expansions.
BACKUP_NAME = "%Y.%m.%d-%H.%M.%S"

# Name of the in-progress snapshot series and of the latest alias.
SNAPSHOT_NAME = "backup-inprogress"
LATEST_NAME = "latest"


class ServerConfig(BaseModel):
    """A host taking part in a backup."""

    name: str = Field(description="Short name/identifier for the server")
    host: str = Field(default="localhost", description="Hostname used to reach the server")
    root: str = Field(default="/", description="Directory all backup paths are relative to")
    connection_command: Optional[List[str]] = Field(
        default=None,
        description="Command used to reach the server, must end with the host (default: ssh <host>)",
    )

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        """Validate the server root path."""
        if not v.startswith("/"):
            raise ValueError("root must be an absolute path")
        return v

    @property
    def command(self) -> List[str]:
        """Get the connection command, defaulting to plain ssh."""
        if self.connection_command is None:
            return ["ssh", self.host]
        return list(self.connection_command)


class TargetConfig(ServerConfig):
    """A server backups are transferred to."""

    schedule: str = Field(
        default="* * * * *",
        description="Cron-like schedule: 'minute hour day-of-month month day-of-week'",
    )
    enabled: bool = Field(default=True, description="Whether scheduled runs include this target")

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        """Validate the cron schedule format."""
        schedule_parts = v.strip().split()

        if len(schedule_parts) != 5:
            raise ValueError(
                "Schedule must have 5 fields: 'minute hour day-of-month month day-of-week'"
            )

        try:
            croniter(v)
            return v
        except Exception as e:
            raise ValueError(f"Invalid cron schedule format: {e}")


class DirectoryConfig(BaseModel):
    """A directory, relative to the server roots, to back up."""

    path: str = Field(description="Path relative to the master and target roots")
    arguments: List[str] = Field(
        default_factory=list, description="Extra rsync arguments for this directory"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate and normalize the directory path."""
        v = v.strip("/")
        if not v:
            raise ValueError("path must not be empty")
        if ".." in v.split("/"):
            raise ValueError("path must not contain '..'")
        return posixpath.normpath(v)


class RSyncOptions(BaseModel):
    """Options of the plain rsync transfer method."""

    command: List[str] = Field(default_factory=lambda: ["rsync"])
    arguments: List[str] = Field(default_factory=list)
    archive: bool = False
    stats: bool = False

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        """Validate the base command is not empty."""
        if not v:
            raise ValueError("command must contain at least the program name")
        return v


class SnapshotOptions(RSyncOptions):
    """Options of the incremental snapshot transfer method."""

    archive: bool = True
    stats: bool = True
    snapshot_name: str = SNAPSHOT_NAME
    latest_name: str = LATEST_NAME
    rotate_command: Optional[List[str]] = Field(
        default=None,
        description="Command run on the target after a successful transfer",
    )

    @field_validator("snapshot_name", "latest_name")
    @classmethod
    def validate_series_name(cls, v: str) -> str:
        """Validate series names are plain relative names."""
        if not v or v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"Invalid series name: {v!r}")
        return v


class PruneConfig(BaseModel):
    """Retention configuration consumed by the prune job and its policy."""

    hourly: int = Field(default=24, ge=0, description="Number of hourly backups to keep")
    daily: int = Field(default=7 * 4, ge=0, description="Number of daily backups to keep")
    weekly: int = Field(default=52, ge=0, description="Number of weekly backups to keep")
    monthly: int = Field(default=12 * 3, ge=0, description="Number of monthly backups to keep")
    quarterly: int = Field(default=4 * 10, ge=0, description="Number of quarterly backups to keep")
    yearly: int = Field(default=20, ge=0, description="Number of yearly backups to keep")
    format: str = Field(default=BACKUP_NAME, description="strftime format of the rotation names")
    latest: str = Field(default=LATEST_NAME, description="Name of the latest backup symlink")
    keep: Literal["youngest", "oldest"] = Field(
        default="oldest",
        description="Keep the younger or older backups within the same period division",
    )
    dry: bool = Field(default=False, description="Print what would be done rather than doing it")
    policy: Optional[str] = Field(
        default=None, description="Retention policy factory as 'module:attribute'"
    )

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, v: Optional[str]) -> Optional[str]:
        """Validate the policy import path."""
        if v is not None:
            module, _, attribute = v.partition(":")
            if not module or not attribute:
                raise ValueError("policy must have the form 'module:attribute'")
        return v


class AppConfig(BaseModel):
    """Main application configuration."""

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_file: str = Field(
        default="log/snapsync.log",
        description="Path to log file relative to the working directory",
    )
    master: ServerConfig = Field(default_factory=lambda: ServerConfig(name="master"))
    targets: List[TargetConfig] = Field(default_factory=list)
    directories: List[DirectoryConfig] = Field(default_factory=list)
    method: Literal["rsync", "snapshot"] = "snapshot"
    rsync: RSyncOptions = Field(default_factory=RSyncOptions)
    snapshot: SnapshotOptions = Field(default_factory=SnapshotOptions)
    prune: PruneConfig = Field(default_factory=PruneConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @model_validator(mode="after")
    def validate_names_unique(self) -> AppConfig:
        """Ensure target names and directory paths are unique."""
        names = [target.name for target in self.targets]
        if len(names) != len(set(names)):
            raise ValueError("Target names must be unique")

        paths = [directory.path for directory in self.directories]
        if len(paths) != len(set(paths)):
            raise ValueError("Directory paths must be unique")
        return self


def load_config(config_path: str = "config.yaml") -> AppConfig:
    """Load and validate configuration from YAML file."""
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML format in config file: {e}", path=config_path)

    if config_data is None:
        raise ConfigurationError("Configuration file is empty", path=config_path)
    if not isinstance(config_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping", path=config_path)

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation error: {e}", path=config_path)
