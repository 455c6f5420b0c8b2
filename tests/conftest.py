from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import pytest

from variant_orchestrator.config import BuildConfig
from variant_orchestrator.models import ParameterContext, StageResult
from variant_orchestrator.runner import StageFailure
from variant_orchestrator.stages import Stage


class RecordingRunner:
    """Stage runner double that records calls and fails on request."""

    def __init__(self, failures: Optional[Mapping[str, int]] = None, write_artifacts: bool = True) -> None:
        self.failures = dict(failures or {})
        self.write_artifacts = write_artifacts
        self.calls: List[str] = []
        self.extras: Dict[str, Dict[str, str]] = {}

    def run(self, stage: Stage, context: ParameterContext, extra: Optional[Mapping[str, str]] = None) -> StageResult:
        self.calls.append(stage.name)
        self.extras[stage.name] = dict(extra or {})
        exit_code = self.failures.get(stage.name, 0)
        if exit_code:
            raise StageFailure(stage.name, exit_code, StageResult(stage.name, exit_code))
        if self.write_artifacts and stage.produces_artifact:
            write_artifact(stage, context)
        return StageResult(stage.name, 0)


class FixedIdentifiers:
    def __init__(self, revision: str = "abcdef12", suffix: str = "fixed") -> None:
        self.revision = revision
        self.suffix = suffix

    def short_revision(self, context: ParameterContext) -> str:
        return self.revision

    def unique_suffix(self) -> str:
        return self.suffix


def write_artifact(stage: Stage, context: ParameterContext, ami_id: str = "ami-123") -> Path:
    prefix = context.config.image_prefix if context.config else "bottlerocket"
    filename = stage.artifact_filename(prefix, context.variant, context.architecture)
    assert filename is not None
    path = context.image_dir / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    if stage.artifact_kind == "ami":
        path.write_text(json.dumps({context.region: {"id": ami_id, "name": "demo"}}))
    else:
        path.write_bytes(b"image")
    return path


@pytest.fixture
def infra_config(tmp_path: Path) -> Path:
    path = tmp_path / "configs" / "Infra.toml"
    path.parent.mkdir()
    path.write_text('[aws]\nregions = ["us-west-2"]\n')
    return path


@pytest.fixture
def build_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def environment(build_root: Path, infra_config: Path) -> Dict[str, str]:
    return {
        "BUILDSYS_ROOT_DIR": str(build_root),
        "BUILDSYS_VARIANT": "aws-dev",
        "BUILDSYS_ARCH": "x86_64",
        "TWOLITER_REV": "0123456789abcdef0123456789abcdef01234567",
        "PUBLISH_INFRA_CONFIG_PATH": str(infra_config),
        "PUBLISH_REGIONS": "us-west-2,us-east-1",
    }


@pytest.fixture
def context(build_root: Path, infra_config: Path) -> ParameterContext:
    return ParameterContext(
        variant="aws-dev",
        architecture="x86_64",
        revision_sha="0123456789abcdef",
        infra_config_path=build_root / "Infra.toml",
        region="us-west-2",
        root_dir=build_root,
        config=BuildConfig(),
    )
