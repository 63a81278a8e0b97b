"""
Configuration data models for issuesync.

These models define the structure of .issuesync/config.json and
~/.config/issuesync/config.json files, with validation and type safety
via Pydantic.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_BRANCH_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")


class SyncConfig(BaseModel):
    """
    Sync branch and transport settings.

    Controls where records are stored and how hard the engine tries
    before giving up on the remote.
    """
    branch: str = Field(
        default="issuesync-sync",
        description="Name of the branch holding the records"
    )
    remote: str = Field(
        default="origin",
        description="Remote to fetch from and publish to"
    )
    max_publish_attempts: int = Field(
        default=5,
        ge=1,
        description="Full fetch/merge/publish cycles before giving up on a moving remote"
    )
    network_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds before a fetch or push is killed"
    )
    network_retries: int = Field(
        default=3,
        ge=0,
        description="Extra attempts for a failed fetch or push"
    )
    retry_delay: float = Field(
        default=0.5,
        ge=0,
        description="Seconds before the first network retry (doubled each retry)"
    )

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        if not _BRANCH_NAME.match(v) or ".." in v or v.endswith((".lock", "/")):
            raise ValueError(f"Invalid branch name: {v!r}")
        return v


class DisplayConfig(BaseModel):
    """
    How records are shown to people.
    """
    id_prefix: str = Field(
        default="bd",
        pattern=r"^[a-z][a-z0-9]*$",
        description="Prefix of short display ids (bd -> bd-a1b2)"
    )


class IssueSyncConfig(BaseModel):
    """
    Complete issuesync configuration.

    Merged from defaults, user config, project config and environment.
    """
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Sync branch and transport settings"
    )
    display: DisplayConfig = Field(
        default_factory=DisplayConfig,
        description="Display settings"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,  # Validate on field assignment
    )
