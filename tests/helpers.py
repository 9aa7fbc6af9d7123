"""
Test helpers shared across modules.
"""

import re

from converge.core.models import Resource, ResourceKind
from converge.providers.shell.command import CommandResult


def make_resource(rid: str, *deps: str, kind: ResourceKind = ResourceKind.PACKAGE, **spec) -> Resource:
    """Small resource factory: ``make_resource("b", "a")`` depends on ``a``."""
    return Resource(id=rid, kind=kind, spec=spec or {"name": rid}, depends_on=deps)


class ScriptedRunner:
    """Stand-in for run_command: answers by matching the joined command.

    Unmatched commands succeed with empty output.
    """

    def __init__(self, responses: dict[str, CommandResult] | None = None):
        self.responses = responses or {}
        self.commands: list[list[str]] = []
        self.sudo: list[bool] = []

    def __call__(self, cmd, *, sudo=False, timeout=120, env=None, cwd=None, input_text=None):
        self.commands.append(list(cmd))
        self.sudo.append(sudo)
        joined = " ".join(cmd)
        for pattern, result in self.responses.items():
            if re.search(pattern, joined):
                return result
        return CommandResult(command=list(cmd), returncode=0)


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout)


def fail(stderr: str = "", code: int = 1) -> CommandResult:
    return CommandResult(returncode=code, stderr=stderr)
