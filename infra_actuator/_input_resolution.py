"""Resolve CLI inputs against environment variables and defaults.

Precedence is CLI parameter, then environment variable, then default.
"""

from __future__ import annotations

import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class InputResolution:
    """How one input is looked up when the CLI does not provide it."""

    env_key: str
    default: str | Path | None = None
    required: bool = False
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve one input from parameter, environment variable, or default.

    Raises
    ------
    SystemExit
        If the input is required and neither source provides it.

    Examples
    --------
    >>> resolve_input(None, InputResolution("ACTUATOR_TOFU_BINARY", default="tofu"), env={})
    'tofu'
    >>> resolve_input(None, InputResolution("ACTUATOR_STORE_DIR", as_path=True),
    ...               env={"ACTUATOR_STORE_DIR": "/srv/store"})
    PosixPath('/srv/store')
    """
    if param_value is not None:
        return param_value

    env_value = (os.environ if env is None else env).get(resolution.env_key)
    if env_value:
        return Path(env_value) if resolution.as_path else env_value

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise SystemExit(msg)

    return resolution.default


def resolve_path(
    param_value: Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> Path | None:
    """Resolve an input that names a filesystem path."""
    value = resolve_input(param_value, resolution, env)
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(value)


def require_path(
    param_value: Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> Path:
    """Resolve a path input that must be provided by some source."""
    value = resolve_path(param_value, resolution, env)
    if value is None:
        msg = f"{resolution.env_key} is required"
        raise SystemExit(msg)
    return value
