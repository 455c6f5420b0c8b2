from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from .artifacts import ArtifactLocator, NotFoundError
from .config import ConfigError
from .ids import GitIdentifiers, IdentifierSource, artifact_name
from .models import Artifact, BuildResult, ParameterContext, StageResult
from .runner import StageFailure, StageRunner
from .stages import Stage, validate_order

logger = logging.getLogger(__name__)

EXIT_ARTIFACT_MISSING = 66
EXIT_CONFIG_ERROR = 78


class Runner(Protocol):
    def run(
        self,
        stage: Stage,
        context: ParameterContext,
        extra: Optional[Mapping[str, str]] = None,
    ) -> StageResult: ...


class BuildPipeline:
    """Runs stages one at a time in build order and stops at the first failure.

    Nothing is rolled back on failure; outputs of completed stages stay on
    disk for inspection.
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        locator: Optional[ArtifactLocator] = None,
        identifiers: Optional[IdentifierSource] = None,
    ) -> None:
        self.runner = runner or StageRunner()
        self.locator = locator or ArtifactLocator()
        self.identifiers = identifiers or GitIdentifiers()

    def stage_params(
        self,
        stage: Stage,
        context: ParameterContext,
        artifacts: Mapping[str, Artifact],
    ) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if stage.artifact_kind == "ami":
            params["PUBLISH_AMI_NAME"] = artifact_name(context, self.identifiers)
        if stage.consumes:
            artifact = artifacts.get(stage.consumes)
            if artifact is None:
                raise NotFoundError(stage.consumes, f"Stage '{stage.name}' needs the output of '{stage.consumes}'")
            params.update(artifact.as_params())
        return params

    def check(self, stages: Iterable[Stage], context: ParameterContext) -> List[Stage]:
        ordered = validate_order(stages)
        for stage in ordered:
            missing = sorted(name for name in stage.required_parameters if not context.has(name))
            if missing:
                raise ConfigError(f"Stage '{stage.name}' is missing parameters: {', '.join(missing)}")
        return ordered

    def run_sequence(self, stages: Iterable[Stage], context: ParameterContext) -> BuildResult:
        ordered = self.check(stages, context)
        result = BuildResult(succeeded=False)
        logger.info(
            "Building %s for %s: %s",
            context.variant,
            context.architecture,
            " -> ".join(stage.name for stage in ordered),
        )

        for stage in ordered:
            try:
                extra = self.stage_params(stage, context, result.artifacts)
                stage_result = self.runner.run(stage, context, extra)
            except StageFailure as exc:
                return self._failed(result, stage, exc.exit_code, str(exc))
            except NotFoundError as exc:
                return self._missing(result, stage, exc)
            if not stage_result.succeeded:
                message = f"Stage '{stage.name}' failed with exit code {stage_result.exit_code}"
                return self._failed(result, stage, stage_result.exit_code, message)

            if stage.produces_artifact:
                try:
                    artifact = self.locator.locate(stage, context)
                except NotFoundError as exc:
                    result.results.append(stage_result)
                    return self._missing(result, stage, exc)
                result.artifacts[stage.name] = artifact
                stage_result.artifact_path = artifact.path
            result.results.append(stage_result)

        result.succeeded = True
        logger.info("Build finished: %s", ", ".join(result.completed_stages))
        return result

    @staticmethod
    def _failed(result: BuildResult, stage: Stage, exit_code: int, message: str) -> BuildResult:
        logger.error("Stage %s failed with exit code %s", stage.name, exit_code)
        result.failed_stage = stage.name
        result.exit_code = exit_code
        result.error = message
        return result

    @staticmethod
    def _missing(result: BuildResult, stage: Stage, exc: NotFoundError) -> BuildResult:
        logger.error("Stage %s: %s", stage.name, exc)
        result.failed_stage = stage.name
        result.exit_code = EXIT_ARTIFACT_MISSING
        result.error = str(exc)
        return result
