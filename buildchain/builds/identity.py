"""Environment identity computation.

This module handles:
- Canonical serialization of the environment-defining part of a config
- SHA-384 identity over that serialization
- Deterministic names for environment images and build instances

Only ``base`` and ``prepare`` define an environment, so configs that share
a preparation recipe share the environment image regardless of their
name, build or publish commands.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from buildchain.recipes.schema import BuildConfigSchema

# Prefix of every image and instance name created by buildchain
NAME_PREFIX = "buildchain"

# Identity characters kept in preparation instance names
PREPARE_IDENTITY_CHARS = 12


@dataclass(frozen=True)
class EnvironmentInputs:
    """Canonical representation of the inputs that define an environment.

    Attributes:
        base: Base sandbox image.
        prepare: Preparation commands, in execution order.
    """

    base: str
    prepare: tuple[tuple[str, ...], ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: BuildConfigSchema) -> EnvironmentInputs:
        return cls(
            base=config.base,
            prepare=tuple(tuple(command) for command in config.prepare),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Command order is kept as-is; it is execution order.
        """
        return {
            "base": self.base,
            "prepare": [list(command) for command in self.prepare],
        }

    def canonical_json(self) -> bytes:
        """Serialize to canonical JSON bytes (sorted keys, no whitespace)."""
        return json.dumps(
            self.to_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")


def compute_identity(inputs: EnvironmentInputs) -> str:
    """Compute the SHA-384 hex digest of the canonical inputs."""
    return hashlib.sha384(inputs.canonical_json()).hexdigest()


def compute_environment_identity(config: BuildConfigSchema) -> str:
    """Compute the environment identity of a build configuration.

    Args:
        config: Build configuration.

    Returns:
        SHA-384 hex digest over ``{base, prepare}``.
    """
    return compute_identity(EnvironmentInputs.from_config(config))


def environment_image_name(
    config: BuildConfigSchema,
    identity: str | None = None,
) -> str:
    """Return the image name for a config's environment.

    Args:
        config: Build configuration.
        identity: Precomputed identity; computed if not provided.

    Returns:
        ``buildchain-<name>-<identity>``.
    """
    if identity is None:
        identity = compute_environment_identity(config)
    return f"{NAME_PREFIX}-{config.name}-{identity}"


def prepare_instance_name(config: BuildConfigSchema, identity: str) -> str:
    """Return the instance name used while preparing an environment image.

    Instance names must be valid hostnames of at most 63 characters, so
    only a prefix of the identity is used. The published image keeps the
    full name from environment_image_name().
    """
    return f"{NAME_PREFIX}-{config.name}-prep-{identity[:PREPARE_IDENTITY_CHARS]}"


def run_instance_name(config: BuildConfigSchema, source_time: int) -> str:
    """Return the instance name for building ``config`` at ``source_time``."""
    return f"{NAME_PREFIX}-{config.name}-{source_time}"


__all__ = [
    "NAME_PREFIX",
    "PREPARE_IDENTITY_CHARS",
    "EnvironmentInputs",
    "compute_environment_identity",
    "compute_identity",
    "environment_image_name",
    "prepare_instance_name",
    "run_instance_name",
]
