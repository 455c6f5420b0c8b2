from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .artifacts import ArtifactLocator, NotFoundError
from .config import BuildConfig, ConfigError
from .context import resolve
from .logging_utils import configure_logging
from .models import Artifact, ParameterContext
from .pipeline import EXIT_ARTIFACT_MISSING, EXIT_CONFIG_ERROR, BuildPipeline
from .runner import StageRunner
from .stages import SEQUENCES, STAGES, Stage, get_sequence, get_stage, required_parameters, validate_order
from .utils import write_report

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> BuildConfig:
    config = BuildConfig.from_file(args.config) if args.config else BuildConfig()
    overrides = {}
    if getattr(args, "lookaside_cache", None):
        overrides["lookaside_cache"] = args.lookaside_cache
    if getattr(args, "upstream_source_fallback", False):
        overrides["upstream_source_fallback"] = True
    return dataclasses.replace(config, **overrides) if overrides else config


def _selected_stages(args: argparse.Namespace) -> Tuple[Stage, ...]:
    if args.stage:
        return tuple(validate_order(get_stage(name) for name in args.stage))
    return get_sequence(args.sequence)


def _resolve_for(
    args: argparse.Namespace, stages: Sequence[Stage], environ: Mapping[str, str]
) -> ParameterContext:
    config = _load_config(args)
    return resolve(environ, config=config, required=required_parameters(stages), cwd=Path.cwd())


def cmd_stages(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    for stage in sorted(STAGES.values(), key=lambda item: (item.ordinal, item.name)):
        needs = ",".join(sorted(stage.required_parameters)) or "-"
        print(f"{stage.ordinal}\t{stage.name}\t{needs}\t{stage.produces_artifact or '-'}")
    print()
    for name, stages in SEQUENCES.items():
        print(f"{name}\t{' -> '.join(stage.name for stage in stages)}")
    return 0


def cmd_plan(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    stages = _selected_stages(args)
    context = _resolve_for(args, stages, environ)
    runner = StageRunner()
    locator = ArtifactLocator()
    pipeline = BuildPipeline(runner=runner, locator=locator)
    # Outputs do not exist yet, so consumers are shown the expected path and a marker ID.
    planned: Dict[str, Artifact] = {}
    for stage in stages:
        extra = pipeline.stage_params(stage, context, planned)
        print(" ".join(runner.command_for(stage, context, extra)))
        if stage.produces_artifact:
            planned[stage.name] = Artifact(
                stage=stage.name,
                kind=stage.artifact_kind or "file",
                path=locator.artifact_path(stage, context),
                identifier=f"<{stage.name}-output>" if stage.artifact_kind == "ami" else None,
                region=context.region,
            )
    return 0


def cmd_build(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    stages = _selected_stages(args)
    context = _resolve_for(args, stages, environ)
    pipeline = BuildPipeline()
    result = pipeline.run_sequence(stages, context)
    if args.report:
        write_report(args.report, result.to_dict())
    if result.succeeded:
        print(json.dumps({name: artifact.to_dict() for name, artifact in result.artifacts.items()}, indent=2))
        return 0
    print(f"Stage '{result.failed_stage}' failed with exit code {result.exit_code}", file=sys.stderr)
    return result.exit_code


def cmd_locate(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    stage = get_stage(args.stage)
    required = {"region"} if stage.artifact_kind == "ami" else set()
    context = resolve(environ, config=_load_config(args), required=required, cwd=Path.cwd())
    artifact = ArtifactLocator().locate(stage, context)
    print(artifact.identifier or artifact.path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Variant build orchestrator")
    parser.add_argument("--config", help="Path to a YAML or JSON build config file.")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity; below info the build tool output is captured.",
    )
    parser.add_argument("--log-file", help="Also write logs to this file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stages_parser = subparsers.add_parser("stages", help="List stages and build sequences")
    stages_parser.set_defaults(func=cmd_stages)

    for command, func, help_text in (
        ("plan", cmd_plan, "Print the build tool commands for a sequence"),
        ("build", cmd_build, "Run a build sequence"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("--sequence", default="variant", choices=sorted(SEQUENCES))
        sub.add_argument(
            "--stage",
            action="append",
            choices=sorted(STAGES),
            help="Run these stages instead of a named sequence (repeatable, in build order).",
        )
        sub.add_argument("--lookaside-cache", help="URL of the lookaside source cache.")
        sub.add_argument(
            "--upstream-source-fallback",
            action="store_true",
            help="Fetch sources from upstream when missing from the lookaside cache.",
        )
        if command == "build":
            sub.add_argument("--report", help="Write a JSON run report to this path.")
        sub.set_defaults(func=func)

    locate_parser = subparsers.add_parser("locate", help="Print the artifact a stage produced")
    locate_parser.add_argument("--stage", required=True, choices=sorted(STAGES))
    locate_parser.set_defaults(func=cmd_locate)

    return parser


def main(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(getattr(logging, args.log_level.upper()), args.log_file)
    environ = dict(os.environ) if environ is None else environ

    try:
        return args.func(args, environ)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except NotFoundError as exc:
        logger.error("%s", exc)
        return EXIT_ARTIFACT_MISSING


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
