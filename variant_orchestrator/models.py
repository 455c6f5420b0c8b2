from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from .config import BuildConfig


@dataclass(frozen=True)
class ParameterContext:
    """Validated build parameters shared by every stage of a run."""

    variant: str
    architecture: str
    revision_sha: str
    infra_config_path: Optional[Path]
    region: Optional[str]
    root_dir: Path
    kit: Optional[str] = None
    release_version: Optional[str] = None
    passthrough_env: Tuple[Tuple[str, str], ...] = ()
    config: Optional["BuildConfig"] = field(default=None, compare=False, repr=False)

    def has(self, name: str) -> bool:
        return getattr(self, name, None) not in (None, "")

    @property
    def image_dir(self) -> Path:
        return self.root_dir / "build" / "images" / f"{self.architecture}-{self.variant}" / "latest"


@dataclass
class StageResult:
    """Outcome of one external stage invocation."""

    stage: str
    exit_code: int
    duration_s: float = 0.0
    command: List[str] = field(default_factory=list)
    artifact_path: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "exit_code": self.exit_code,
            "duration_s": round(self.duration_s, 3),
            "command": list(self.command),
            "artifact_path": str(self.artifact_path) if self.artifact_path else None,
        }


@dataclass(frozen=True)
class Artifact:
    """A file or record left behind by a stage for later stages to read."""

    stage: str
    kind: str
    path: Path
    identifier: Optional[str] = None
    region: Optional[str] = None

    def as_params(self) -> Dict[str, str]:
        if self.kind == "ami":
            params = {"PUBLISH_AMI_INPUT": str(self.path)}
            if self.identifier:
                params["PUBLISH_AMI_ID"] = self.identifier
            return params
        return {"BUILDSYS_IMAGE_INPUT": str(self.path)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "kind": self.kind,
            "path": str(self.path),
            "identifier": self.identifier,
            "region": self.region,
        }


@dataclass
class BuildResult:
    """Summary of a sequence run; either every stage passed or one is named as failed."""

    succeeded: bool
    results: List[StageResult] = field(default_factory=list)
    artifacts: Dict[str, Artifact] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    exit_code: int = 0
    error: Optional[str] = None

    @property
    def completed_stages(self) -> List[str]:
        return [result.stage for result in self.results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed_stage": self.failed_stage,
            "exit_code": self.exit_code,
            "error": self.error,
            "stages": [result.to_dict() for result in self.results],
            "artifacts": {name: artifact.to_dict() for name, artifact in self.artifacts.items()},
        }
