from __future__ import annotations

import dataclasses
import sys

import pytest

from variant_orchestrator.config import BuildConfig
from variant_orchestrator.runner import EXIT_TOOL_NOT_FOUND, StageFailure, StageRunner
from variant_orchestrator.stages import AMI, BUILD, BUILD_KIT, CLEAN_REPOS


def _env_flags(command):
    return {command[i + 1].split("=", 1)[0]: command[i + 1].split("=", 1)[1] for i, part in enumerate(command) if part == "-e"}


def test_command_layout(context) -> None:
    command = StageRunner().command_for(BUILD, context)
    assert command[:7] == [
        "cargo",
        "make",
        "--disable-check-for-updates",
        "--makefile",
        str(context.root_dir / "Makefile.toml"),
        "--cwd",
        str(context.root_dir),
    ]
    assert command[-1] == "build"
    flags = _env_flags(command)
    assert flags["BUILDSYS_VARIANT"] == "aws-dev"
    assert flags["BUILDSYS_ARCH"] == "x86_64"
    assert flags["TWOLITER_REV"] == "0123456789abcdef"
    assert flags["PUBLISH_INFRA_CONFIG_PATH"] == str(context.infra_config_path)
    assert flags["PUBLISH_REGIONS"] == "us-west-2"
    assert flags["BUILDSYS_UPSTREAM_SOURCE_FALLBACK"] == "false"


def test_stage_extras_are_added(context) -> None:
    command = StageRunner().command_for(AMI, context, {"PUBLISH_AMI_NAME": "aws-dev-x86_64-01234567-abc"})
    flags = _env_flags(command)
    assert flags["PUBLISH_AMI_NAME"] == "aws-dev-x86_64-01234567-abc"
    assert "BUILDSYS_UPSTREAM_SOURCE_FALLBACK" not in flags
    assert command[-1] == "ami"


def test_passthrough_never_overrides_explicit(context) -> None:
    context = dataclasses.replace(
        context,
        passthrough_env=(("BUILDSYS_VARIANT", "other"), ("REPO_EXPIRATION_POLICY_PATH", "policy.toml")),
    )
    flags = _env_flags(StageRunner().command_for(CLEAN_REPOS, context))
    assert flags["BUILDSYS_VARIANT"] == "aws-dev"
    assert flags["REPO_EXPIRATION_POLICY_PATH"] == "policy.toml"


def test_config_settings_flow_into_command(context) -> None:
    config = BuildConfig(
        tool=["twoliter", "make"],
        makefile="build/tools/Makefile.toml",
        lookaside_cache="https://cache.example.com",
        upstream_source_fallback=True,
        env={"BUILDSYS_JOBS": "8"},
    )
    command = StageRunner().command_for(BUILD, dataclasses.replace(context, config=config))
    assert command[:2] == ["twoliter", "make"]
    assert str(context.root_dir / "build/tools/Makefile.toml") in command
    flags = _env_flags(command)
    assert flags["BUILDSYS_LOOKASIDE_CACHE"] == "https://cache.example.com"
    assert flags["BUILDSYS_UPSTREAM_SOURCE_FALLBACK"] == "true"
    assert flags["BUILDSYS_JOBS"] == "8"


def _python_tool(context, code: str):
    config = BuildConfig(tool=[sys.executable, "-c", code])
    return dataclasses.replace(context, config=config)


def test_run_success(context) -> None:
    context = _python_tool(context, "import sys; sys.exit(0)")
    result = StageRunner(stream_output=False).run(BUILD, context)
    assert result.stage == "build"
    assert result.exit_code == 0
    assert result.succeeded
    assert result.command[-1] == "build"


def test_run_runs_in_build_root(context) -> None:
    context = _python_tool(context, "import os, pathlib; pathlib.Path('marker').write_text(os.getcwd())")
    StageRunner(stream_output=False).run(BUILD, context)
    assert (context.root_dir / "marker").exists()


def test_run_surfaces_exit_code_verbatim(context) -> None:
    context = _python_tool(context, "import sys; sys.exit(3)")
    with pytest.raises(StageFailure) as excinfo:
        StageRunner(stream_output=False).run(CLEAN_REPOS, context)
    assert excinfo.value.stage == "clean-repos"
    assert excinfo.value.exit_code == 3
    assert excinfo.value.result is not None
    assert excinfo.value.result.exit_code == 3


def test_missing_tool_is_stage_failure(context) -> None:
    context = dataclasses.replace(context, config=BuildConfig(tool=["definitely-not-a-build-tool-xyz"]))
    with pytest.raises(StageFailure) as excinfo:
        StageRunner(stream_output=False).run(BUILD, context)
    assert excinfo.value.exit_code == EXIT_TOOL_NOT_FOUND


def test_kit_stage_command(context) -> None:
    context = dataclasses.replace(context, kit="core-kit")
    command = StageRunner().command_for(BUILD_KIT, context)
    flags = _env_flags(command)
    assert flags["BUILDSYS_KIT"] == "core-kit"
    assert flags["TWOLITER_TOOLS_DIR"] == str(context.root_dir / "build" / "tools")
    assert flags["BUILDSYS_UPSTREAM_SOURCE_FALLBACK"] == "false"
    assert command[-1] == "build-kit"


def test_tools_dir_from_config(context) -> None:
    context = dataclasses.replace(context, config=BuildConfig(tools_dir=".twoliter/tools"))
    flags = _env_flags(StageRunner().command_for(BUILD, context))
    assert flags["TWOLITER_TOOLS_DIR"] == str(context.root_dir / ".twoliter/tools")
    assert "BUILDSYS_KIT" not in flags
