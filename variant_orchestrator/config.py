from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .utils import load_structured

DEFAULT_TOOL = ["cargo", "make"]
DEFAULT_MAKEFILE = "Makefile.toml"
DEFAULT_TOOLS_DIR = "build/tools"
DEFAULT_IMAGE_PREFIX = "bottlerocket"
DEFAULT_INFRA_CONFIG_NAME = "Infra.toml"


class ConfigError(RuntimeError):
    """Raised when build parameters or the config file are missing or invalid."""


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list, bool)):
        raise ConfigError(f"'{key}' must be a string")
    return str(value)


def _required_str(data: Dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{key}' must be a non-empty string")
    return value


def _flag(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false")
    return value


@dataclass(frozen=True)
class BuildConfig:
    """Defaults and tool settings sourced from an optional build config file."""

    variant: Optional[str] = None
    architecture: Optional[str] = None
    region: Optional[str] = None
    kit: Optional[str] = None
    infra_config_path: Optional[str] = None
    tool: List[str] = field(default_factory=lambda: list(DEFAULT_TOOL))
    makefile: str = DEFAULT_MAKEFILE
    tools_dir: str = DEFAULT_TOOLS_DIR
    image_prefix: str = DEFAULT_IMAGE_PREFIX
    infra_config_name: str = DEFAULT_INFRA_CONFIG_NAME
    lookaside_cache: Optional[str] = None
    upstream_source_fallback: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        tool = data.get("tool", DEFAULT_TOOL)
        if isinstance(tool, str):
            tool = tool.split()
        if not tool or not isinstance(tool, list):
            raise ConfigError("'tool' must name the build tool command")
        env = data.get("env", {}) or {}
        if not isinstance(env, dict):
            raise ConfigError("'env' must be a mapping of variable names to values")
        return cls(
            variant=_optional_str(data, "variant"),
            architecture=_optional_str(data, "architecture"),
            region=_optional_str(data, "region"),
            kit=_optional_str(data, "kit"),
            infra_config_path=_optional_str(data, "infra_config_path"),
            tool=[str(part) for part in tool],
            makefile=_required_str(data, "makefile", DEFAULT_MAKEFILE),
            tools_dir=_required_str(data, "tools_dir", DEFAULT_TOOLS_DIR),
            image_prefix=_required_str(data, "image_prefix", DEFAULT_IMAGE_PREFIX),
            infra_config_name=_required_str(data, "infra_config_name", DEFAULT_INFRA_CONFIG_NAME),
            lookaside_cache=_optional_str(data, "lookaside_cache"),
            upstream_source_fallback=_flag(data, "upstream_source_fallback"),
            env={str(key): str(value) for key, value in env.items()},
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "BuildConfig":
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Build config file not found: {path}")
        try:
            raw_data = load_structured(path)
        except OSError as exc:
            raise ConfigError(f"Unable to read build config {path}: {exc}") from exc
        except (ValueError, yaml.YAMLError) as exc:
            raise ConfigError(f"Unable to parse build config {path}: {exc}") from exc

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigError(f"Build config {path} must contain a top-level mapping")
        return cls.from_dict(raw_data)
