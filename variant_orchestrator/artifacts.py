from __future__ import annotations

import json
import logging
from pathlib import Path

from .config import DEFAULT_IMAGE_PREFIX
from .models import Artifact, ParameterContext
from .stages import Stage

logger = logging.getLogger(__name__)


class NotFoundError(RuntimeError):
    """Raised when a stage's expected output is missing or incomplete."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(message)


class ArtifactLocator:
    """Finds stage outputs under ``build/images/{arch}-{variant}/latest``."""

    def artifact_path(self, stage: Stage, context: ParameterContext) -> Path:
        prefix = context.config.image_prefix if context.config else DEFAULT_IMAGE_PREFIX
        filename = stage.artifact_filename(prefix, context.variant, context.architecture)
        if filename is None:
            raise NotFoundError(stage.name, f"Stage '{stage.name}' does not produce an artifact")
        return context.image_dir / filename

    def locate(self, stage: Stage, context: ParameterContext) -> Artifact:
        path = self.artifact_path(stage, context)
        if not path.is_file():
            raise NotFoundError(stage.name, f"Expected output of stage '{stage.name}' not found at {path}")

        if stage.artifact_kind == "ami":
            identifier = read_ami_id(path, context.region, stage=stage.name)
            logger.info("Stage %s produced %s in %s", stage.name, identifier, context.region)
            return Artifact(stage=stage.name, kind="ami", path=path, identifier=identifier, region=context.region)

        logger.info("Stage %s produced %s", stage.name, path)
        return Artifact(stage=stage.name, kind=stage.artifact_kind or "file", path=path)


def read_ami_id(path: Path, region: str | None, *, stage: str = "ami") -> str:
    """Read the AMI ID for ``region`` from a ``{region: {"id": ...}}`` metadata file."""

    if not region:
        raise NotFoundError(stage, f"No region given to look up in {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise NotFoundError(stage, f"AMI metadata file not found: {path}") from exc
    except OSError as exc:
        raise NotFoundError(stage, f"Unable to read AMI metadata file {path}: {exc}") from exc
    except ValueError as exc:
        # Covers both bad JSON and bytes that are not UTF-8.
        raise NotFoundError(stage, f"AMI metadata file {path} is not valid JSON: {exc}") from exc

    entry = data.get(region) if isinstance(data, dict) else None
    if not isinstance(entry, dict):
        raise NotFoundError(stage, f"No AMI for region {region} in {path}")
    identifier = entry.get("id")
    if not identifier:
        raise NotFoundError(stage, f"AMI entry for region {region} in {path} has no 'id'")
    return str(identifier)
