from __future__ import annotations

import logging
import re
import uuid
from typing import Protocol

from .models import ParameterContext
from .utils import CommandError, run_command

logger = logging.getLogger(__name__)

PLACEHOLDER_REVISION = "00000000"
SHORT_REVISION_LENGTH = 8

_DESCRIBE_PATTERN = re.compile(r"-g(?P<sha>[0-9a-f]+)(?:-dirty)?$")


class IdentifierSource(Protocol):
    def short_revision(self, context: ParameterContext) -> str: ...

    def unique_suffix(self) -> str: ...


class GitIdentifiers:
    """Identifier source backed by the build root's git checkout."""

    def short_revision(self, context: ParameterContext) -> str:
        if context.revision_sha:
            return context.revision_sha[:SHORT_REVISION_LENGTH]
        try:
            result = run_command(
                ["git", "describe", "--tags", "--match", "v*", "--long", f"--abbrev={SHORT_REVISION_LENGTH}"],
                cwd=context.root_dir,
            )
        except (CommandError, OSError) as exc:
            logger.warning("Unable to describe revision, using %s: %s", PLACEHOLDER_REVISION, exc)
            return PLACEHOLDER_REVISION
        return parse_describe(result.stdout)

    def unique_suffix(self) -> str:
        return uuid.uuid4().hex[:12]


def parse_describe(output: str) -> str:
    """Extract the abbreviated commit from ``git describe --long`` output."""

    match = _DESCRIBE_PATTERN.search(output.strip())
    if not match:
        return PLACEHOLDER_REVISION
    return match.group("sha")[:SHORT_REVISION_LENGTH]


def artifact_name(context: ParameterContext, identifiers: IdentifierSource) -> str:
    short_revision = identifiers.short_revision(context) or PLACEHOLDER_REVISION
    return f"{context.variant}-{context.architecture}-{short_revision}-{identifiers.unique_suffix()}"
