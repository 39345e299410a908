"""Pydantic models for build configuration validation.

A build configuration names a base sandbox image and three ordered lists
of commands: ``prepare`` builds the reusable environment image, ``build``
runs against the pushed source tree and ``publish`` fills the artifact
directory. Command order is execution order.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Names end up inside LXD instance names, which must be valid hostname labels
CONFIG_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?$")
CONFIG_NAME_MAX_LENGTH = 32

Command = Annotated[list[str], Field(min_length=1)]


class BuildConfigSchema(BaseModel):
    """Schema for a build configuration file.

    Attributes:
        name: Identifier used to name environment images and build instances.
        base: Base sandbox image the environment is prepared from.
        prepare: Commands run once to build the environment image.
        build: Commands run against the source tree.
        publish: Commands run after build to populate the artifact directory.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[
        str,
        Field(
            description="Build identifier",
            min_length=1,
            max_length=CONFIG_NAME_MAX_LENGTH,
        ),
    ]
    base: Annotated[
        str, Field(description="Base sandbox image", min_length=1, max_length=255)
    ]
    prepare: list[Command] = Field(
        default_factory=list, description="Environment preparation commands"
    )
    build: list[Command] = Field(default_factory=list, description="Build commands")
    publish: list[Command] = Field(
        default_factory=list, description="Artifact publish commands"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern."""
        if not CONFIG_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {CONFIG_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("base")
    @classmethod
    def validate_base(cls, v: str) -> str:
        """Validate base has no surrounding or embedded whitespace."""
        if v != v.strip() or any(c.isspace() for c in v):
            raise ValueError(f"base must not contain whitespace, got '{v}'")
        _check_encodable(v, "base")
        return v

    @field_validator("prepare", "build", "publish")
    @classmethod
    def validate_commands(cls, v: list[list[str]]) -> list[list[str]]:
        """Validate every command has a non-empty program name."""
        for index, command in enumerate(v, start=1):
            if not command[0]:
                raise ValueError(f"command {index} has an empty program name")
            for arg in command:
                _check_encodable(arg, f"command {index}")
        return v


def _check_encodable(value: str, what: str) -> None:
    # JSON escapes can produce lone surrogates, which cannot be hashed or
    # passed to a subprocess
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValueError(f"{what} is not valid UTF-8: {e.reason}") from e


__all__ = [
    "CONFIG_NAME_MAX_LENGTH",
    "CONFIG_NAME_PATTERN",
    "BuildConfigSchema",
    "Command",
]
