"""Convergence tasks: idempotent shell steps with a precondition check."""

from __future__ import annotations

import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from string import Template
from typing import Any

from nodeforge.core.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class ConvergenceTask:
    """One unit of configuration work.

    ``check`` exits 0 when the host already satisfies the task, in which
    case ``apply`` is not run. Without a check, ``apply`` must itself be
    safe to repeat (``apt-get install -y``, ``mkdir -p`` and the like).

    Commands may reference variables as ``$node_ip`` or ``${control_ip}``.
    Unknown names are left in place, so shell variables pass through.
    """

    name: str
    apply: str
    check: str | None = None
    become: bool = False
    timeout: float | None = None

    def render(self, variables: Mapping[str, Any]) -> ConvergenceTask:
        values = {k: str(v) for k, v in variables.items()}
        return replace(
            self,
            apply=Template(self.apply).safe_substitute(values),
            check=Template(self.check).safe_substitute(values) if self.check else None,
        )

    def _wrap(self, command: str) -> str:
        if not self.become:
            return command
        return f"sudo -n sh -c {shlex.quote(command)}"

    @property
    def apply_command(self) -> str:
        return self._wrap(self.apply)

    @property
    def check_command(self) -> str | None:
        return self._wrap(self.check) if self.check else None


def tasks_from_config(raw: Iterable[Mapping[str, Any]]) -> tuple[ConvergenceTask, ...]:
    """Parse ``[[tasks]]`` tables into tasks, preserving order."""
    tasks: list[ConvergenceTask] = []
    for position, item in enumerate(raw, 1):
        data = dict(item)
        name = data.pop("name", None) or f"task-{position}"
        apply = data.pop("apply", None)
        if not apply:
            raise ConfigurationError(f"Task '{name}' missing 'apply' command")
        check = data.pop("check", None)
        become = bool(data.pop("become", False))
        timeout = data.pop("timeout", None)
        if data:
            raise ConfigurationError(
                f"Task '{name}' has unknown fields: {', '.join(sorted(data))}"
            )
        tasks.append(
            ConvergenceTask(
                name=name,
                apply=apply,
                check=check,
                become=become,
                timeout=float(timeout) if timeout is not None else None,
            )
        )

    names = [t.name for t in tasks]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate task names: {', '.join(duplicates)}")
    return tuple(tasks)
