from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .config import ConfigError

BASE_PARAMETERS: FrozenSet[str] = frozenset({"variant", "architecture"})
PUBLISH_PARAMETERS: FrozenSet[str] = BASE_PARAMETERS | {"infra_config_path", "region"}
REPO_PARAMETERS: FrozenSet[str] = BASE_PARAMETERS | {"infra_config_path"}
KIT_PARAMETERS: FrozenSet[str] = BASE_PARAMETERS | {"kit"}


@dataclass(frozen=True)
class Stage:
    """One make task in the build, positioned by ``ordinal`` in the overall order."""

    name: str
    ordinal: int
    required_parameters: FrozenSet[str] = BASE_PARAMETERS
    produces_artifact: Optional[str] = None
    artifact_kind: Optional[str] = None
    consumes: Optional[str] = None
    upstream_fallback: bool = False

    def artifact_filename(self, prefix: str, variant: str, architecture: str) -> Optional[str]:
        if self.produces_artifact is None:
            return None
        return self.produces_artifact.format(prefix=prefix, variant=variant, architecture=architecture)


BUILD_PACKAGE = Stage("build-package", 10, upstream_fallback=True)
BUILD_KIT = Stage("build-kit", 10, required_parameters=KIT_PARAMETERS, upstream_fallback=True)
BUILD_VARIANT = Stage(
    "build-variant",
    20,
    produces_artifact="{prefix}-{variant}-{architecture}.img.lz4",
    artifact_kind="image",
    upstream_fallback=True,
)
BUILD = Stage(
    "build",
    20,
    produces_artifact="{prefix}-{variant}-{architecture}.img.lz4",
    artifact_kind="image",
    upstream_fallback=True,
)
AMI = Stage(
    "ami",
    30,
    required_parameters=PUBLISH_PARAMETERS,
    produces_artifact="{prefix}-{variant}-{architecture}-amis.json",
    artifact_kind="ami",
)
SSM = Stage("ssm", 35, required_parameters=PUBLISH_PARAMETERS, consumes="ami")
CLEAN_REPOS = Stage("clean-repos", 40, required_parameters=REPO_PARAMETERS)
REPO = Stage("repo", 50, required_parameters=REPO_PARAMETERS)
CLEAN = Stage("clean", 90, required_parameters=frozenset())

STAGES: Dict[str, Stage] = {
    stage.name: stage
    for stage in (BUILD_PACKAGE, BUILD_KIT, BUILD_VARIANT, BUILD, AMI, SSM, CLEAN_REPOS, REPO, CLEAN)
}

SEQUENCES: Dict[str, Tuple[Stage, ...]] = {
    "packages": (BUILD_PACKAGE,),
    "kit": (BUILD_KIT,),
    "image": (BUILD_PACKAGE, BUILD_VARIANT),
    "variant": (BUILD, AMI, CLEAN_REPOS, REPO),
    "publish": (BUILD, AMI, SSM, CLEAN_REPOS, REPO),
    "clean": (CLEAN,),
}


def get_stage(name: str) -> Stage:
    try:
        return STAGES[name]
    except KeyError as exc:
        raise ConfigError(f"Unknown stage: {name}") from exc


def get_sequence(name: str) -> Tuple[Stage, ...]:
    try:
        return SEQUENCES[name]
    except KeyError as exc:
        raise ConfigError(f"Unknown build sequence: {name}") from exc


def required_parameters(stages: Iterable[Stage]) -> FrozenSet[str]:
    required: FrozenSet[str] = frozenset()
    for stage in stages:
        required = required | stage.required_parameters
    return required


def validate_order(stages: Iterable[Stage]) -> List[Stage]:
    """Return the stages as a list, rejecting anything out of build order.

    A consuming stage must also come after the stage whose artifact it reads.
    """

    ordered = list(stages)
    seen: Dict[str, Stage] = {}
    previous: Optional[Stage] = None
    for stage in ordered:
        if previous is not None and stage.ordinal <= previous.ordinal:
            raise ConfigError(
                f"Stage '{stage.name}' cannot run after '{previous.name}'; stages must follow build order"
            )
        if stage.consumes and stage.consumes not in seen:
            raise ConfigError(f"Stage '{stage.name}' needs output from '{stage.consumes}' earlier in the sequence")
        seen[stage.name] = stage
        previous = stage
    return ordered
