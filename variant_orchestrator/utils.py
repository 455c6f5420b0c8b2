from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml


class CommandError(RuntimeError):
    """A helper command (for example ``git describe``) exited non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"'{' '.join(command)}' exited {returncode}:\n{stdout.rstrip()}\n{stderr.rstrip()}".rstrip()
        )


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    capture: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    With ``capture=False`` the child writes straight to our stdout/stderr and
    the returned process carries empty output strings.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    pipe = subprocess.PIPE if capture else None
    result = subprocess.run(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        stdout=pipe,
        stderr=pipe,
        text=True,
        check=False,
    )
    if result.stdout is None:
        result.stdout = ""
    if result.stderr is None:
        result.stderr = ""
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result


def write_report(path: str | Path, report: Mapping[str, object]) -> Path:
    """Write a run report as JSON, creating the parent directory if needed."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Key order is kept so stages read in the order they ran.
    path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
    return path


def load_structured(path: str | Path) -> Any:
    """Parse a JSON or YAML document, chosen by file suffix."""

    path = Path(path)
    raw_text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(raw_text)
    return yaml.safe_load(raw_text)
