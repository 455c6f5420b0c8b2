"""Resolution of the build parameter context.

Everything a stage needs from the process environment is read here, once,
and frozen into a :class:`ParameterContext`. Other modules only ever see the
context.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AbstractSet, Iterable, Mapping, Optional, Tuple

from .config import BuildConfig, ConfigError
from .models import ParameterContext
from .stages import BASE_PARAMETERS

try:  # pragma: no cover - tomllib is stdlib from 3.11 onwards
    import tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_ARCHITECTURE = "x86_64"
RELEASE_FILE = "Release.toml"

# Variables outside the usual prefixes that the make tasks still read.
PASSTHROUGH_VARS = frozenset(
    {
        "ALLOW_MISSING_KEY",
        "AMI_DATA_FILE_SUFFIX",
        "BOOT_CONFIG",
        "BOOT_CONFIG_INPUT",
        "CARGO_MAKE_CARGO_ARGS",
        "CARGO_MAKE_DEFAULT_TESTSYS_KUBECONFIG_PATH",
        "CARGO_MAKE_TESTSYS_ARGS",
        "CARGO_MAKE_TESTSYS_KUBECONFIG_ARG",
        "MARK_OVA_AS_TEMPLATE",
        "RELEASE_START_TIME",
        "SSM_DATA_FILE_SUFFIX",
        "VMWARE_IMPORT_SPEC_PATH",
        "VMWARE_VM_NAME_DEFAULT",
    }
)
PASSTHROUGH_PREFIXES = ("BOOT_CONFIG", "BUILDSYS_", "PUBLISH_", "REPO_", "TESTSYS_")


def is_build_system_env(key: str) -> bool:
    return key.startswith(PASSTHROUGH_PREFIXES) or key in PASSTHROUGH_VARS


def _lookup(environment: Mapping[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = (environment.get(key) or "").strip()
        if value:
            return value
    return None


def _first_region(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    regions = [region.strip() for region in raw.split(",") if region.strip()]
    return regions[0] if regions else None


def _passthrough(environment: Mapping[str, str]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((key, value) for key, value in environment.items() if is_build_system_env(key)))


def read_release_version(root_dir: Path) -> Optional[str]:
    release_path = root_dir / RELEASE_FILE
    if not release_path.is_file():
        return None
    try:
        data = tomllib.loads(release_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Unable to parse {release_path}: {exc}") from exc
    version = data.get("version")
    return str(version) if version else None


def link_infra_config(source: Path, root_dir: Path, link_name: str) -> Path:
    """Point ``root_dir/link_name`` at ``source``, replacing whatever was there."""

    target = root_dir / link_name
    resolved_source = source.resolve()
    if target.exists() and target.resolve() == resolved_source:
        return target
    if target.is_symlink() or target.exists():
        if target.is_dir() and not target.is_symlink():
            raise ConfigError(f"Cannot replace directory {target} with infra config link")
        logger.debug("Replacing existing infra config at %s", target)
        target.unlink()
    target.symlink_to(resolved_source)
    logger.info("Linked infra config %s -> %s", target, source)
    return target


def resolve(
    environment: Mapping[str, str],
    *,
    config: Optional[BuildConfig] = None,
    required: AbstractSet[str] | Iterable[str] = BASE_PARAMETERS,
    cwd: Optional[str | Path] = None,
) -> ParameterContext:
    """Build a validated :class:`ParameterContext` from environment and config.

    Environment entries win over config file defaults. ``required`` names the
    context fields the planned stages depend on; any that are missing raise
    :class:`ConfigError`. A provided infra config is linked into the build
    root before the context is returned.
    """

    config = config or BuildConfig()
    required = frozenset(required) | BASE_PARAMETERS

    variant = _lookup(environment, "BUILDSYS_VARIANT") or (config.variant or "").strip()
    architecture = (
        _lookup(environment, "BUILDSYS_ARCH") or (config.architecture or "").strip() or DEFAULT_ARCHITECTURE
    )
    revision_sha = _lookup(environment, "TWOLITER_REV", "BUILDSYS_REVISION") or ""
    region = _first_region(_lookup(environment, "PUBLISH_REGIONS", "AWS_REGION")) or config.region
    kit = _lookup(environment, "BUILDSYS_KIT") or config.kit
    infra_raw = _lookup(environment, "PUBLISH_INFRA_CONFIG_PATH") or config.infra_config_path

    root_raw = _lookup(environment, "BUILDSYS_ROOT_DIR") or (str(cwd) if cwd else None)
    if not root_raw:
        raise ConfigError("BUILDSYS_ROOT_DIR is not set and no working directory was given")
    root_dir = Path(root_raw).resolve()
    if not root_dir.is_dir():
        raise ConfigError(f"Build root does not exist: {root_dir}")

    infra_config_path: Optional[Path] = None
    if infra_raw:
        infra_source = Path(infra_raw)
        if not infra_source.is_absolute():
            infra_source = root_dir / infra_source
        if not infra_source.is_file():
            raise ConfigError(f"Infra config not found: {infra_source}")
        infra_config_path = infra_source

    values = {
        "variant": variant,
        "architecture": architecture,
        "revision_sha": revision_sha,
        "infra_config_path": infra_config_path,
        "region": region,
        "kit": kit,
        "root_dir": root_dir,
    }
    unknown = sorted(name for name in required if name not in values)
    if unknown:
        raise ConfigError(f"Unknown build parameters requested: {', '.join(unknown)}")
    missing = sorted(name for name in required if values[name] in (None, ""))
    if missing:
        raise ConfigError(f"Missing required build parameters: {', '.join(missing)}")

    # Everything that can still fail runs before the infra config link is touched.
    release_version = read_release_version(root_dir)
    if infra_config_path is not None:
        infra_config_path = link_infra_config(infra_config_path, root_dir, config.infra_config_name)

    context = ParameterContext(
        variant=variant,
        architecture=architecture,
        revision_sha=revision_sha,
        infra_config_path=infra_config_path,
        region=region,
        root_dir=root_dir,
        kit=kit,
        release_version=release_version,
        passthrough_env=_passthrough(environment),
        config=config,
    )
    logger.debug("Resolved build context %s", context)
    return context
