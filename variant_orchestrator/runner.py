from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional

from .config import BuildConfig
from .models import ParameterContext, StageResult
from .stages import Stage
from .utils import run_command

logger = logging.getLogger(__name__)

EXIT_TOOL_NOT_FOUND = 127


class StageFailure(RuntimeError):
    """Raised when the build tool exits non-zero for a stage."""

    def __init__(self, stage: str, exit_code: int, result: Optional[StageResult] = None) -> None:
        self.stage = stage
        self.exit_code = exit_code
        self.result = result
        super().__init__(f"Stage '{stage}' failed with exit code {exit_code}")


class StageRunner:
    """Invokes one make task per stage with the context rendered as ``-e`` flags."""

    def __init__(self, stream_output: Optional[bool] = None) -> None:
        self.stream_output = stream_output

    def stage_env(
        self,
        stage: Stage,
        context: ParameterContext,
        extra: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        config = context.config or BuildConfig()
        env: Dict[str, str] = {
            "BUILDSYS_ROOT_DIR": str(context.root_dir),
            "BUILDSYS_VARIANT": context.variant,
            "BUILDSYS_ARCH": context.architecture,
            "TWOLITER_TOOLS_DIR": str(context.root_dir / config.tools_dir),
        }
        if context.kit:
            env["BUILDSYS_KIT"] = context.kit
        if context.revision_sha:
            env["TWOLITER_REV"] = context.revision_sha
        if context.infra_config_path is not None:
            env["PUBLISH_INFRA_CONFIG_PATH"] = str(context.infra_config_path)
        if context.region:
            env["PUBLISH_REGIONS"] = context.region
        if context.release_version:
            env["BUILDSYS_VERSION_IMAGE"] = context.release_version
        if config.lookaside_cache:
            env["BUILDSYS_LOOKASIDE_CACHE"] = config.lookaside_cache
        if stage.upstream_fallback:
            env["BUILDSYS_UPSTREAM_SOURCE_FALLBACK"] = str(config.upstream_source_fallback).lower()

        if extra:
            env.update(extra)
        for key, value in list(config.env.items()) + list(context.passthrough_env):
            env.setdefault(key, value)
        return env

    def command_for(
        self,
        stage: Stage,
        context: ParameterContext,
        extra: Optional[Mapping[str, str]] = None,
    ) -> List[str]:
        config = context.config or BuildConfig()
        command = list(config.tool)
        command.extend(
            [
                "--disable-check-for-updates",
                "--makefile",
                str(context.root_dir / config.makefile),
                "--cwd",
                str(context.root_dir),
            ]
        )
        for key, value in self.stage_env(stage, context, extra).items():
            command.extend(["-e", f"{key}={value}"])
        # The task name goes last.
        command.append(stage.name)
        return command

    def _should_stream(self) -> bool:
        if self.stream_output is not None:
            return self.stream_output
        return logger.isEnabledFor(logging.INFO)

    def run(
        self,
        stage: Stage,
        context: ParameterContext,
        extra: Optional[Mapping[str, str]] = None,
    ) -> StageResult:
        command = self.command_for(stage, context, extra)
        stream = self._should_stream()
        logger.info("Running stage %s", stage.name)
        logger.debug("Running: %s", " ".join(command))

        start = time.perf_counter()
        try:
            completed = run_command(command, cwd=context.root_dir, check=False, capture=not stream)
        except FileNotFoundError as exc:
            logger.error("Build tool %s not found: %s", command[0], exc)
            result = StageResult(stage.name, EXIT_TOOL_NOT_FOUND, time.perf_counter() - start, command)
            raise StageFailure(stage.name, EXIT_TOOL_NOT_FOUND, result) from exc

        result = StageResult(stage.name, completed.returncode, time.perf_counter() - start, command)
        if completed.returncode != 0:
            if not stream:
                logger.error(
                    "Stage %s output:\n%s\n%s", stage.name, completed.stdout.rstrip(), completed.stderr.rstrip()
                )
            raise StageFailure(stage.name, completed.returncode, result)

        logger.info("Stage %s finished in %.1fs", stage.name, result.duration_s)
        return result
