"""Convergence engine: apply ordered tasks to every inventory host.

Hosts fan out under a semaphore; tasks within a host run strictly in
sequence. A failing task stops its own host only. Cancellation never
interrupts a task that has started: the in-flight task finishes, then
no further task is scheduled on any host.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from loguru import logger

from nodeforge.api import ConvergenceRun, HostOutcome, InventoryEntry, TaskResult
from nodeforge.convergence.task import ConvergenceTask
from nodeforge.convergence.transport import CommandResult, RemoteExecutor
from nodeforge.core.exceptions import ConfigurationError, ConvergenceFailure, TransportError
from nodeforge.retry import RetryPolicy, retrying

_STDERR_TAIL = 2000


@dataclass(frozen=True, slots=True)
class ConvergenceSettings:
    """Tuning for a convergence run.

    Attributes:
        max_parallel_hosts: Hosts converging at the same time.
        retry: Backoff for transient transport failures. Task failures are never retried.
        task_timeout: Per-command timeout in seconds, unless the task sets its own.
    """

    max_parallel_hosts: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    task_timeout: float = 300.0

    def __post_init__(self) -> None:
        if self.max_parallel_hosts < 1:
            raise ConfigurationError(
                f"max_parallel_hosts must be >= 1, got {self.max_parallel_hosts}"
            )


class ConvergenceEngine:

    def __init__(
        self,
        executor: RemoteExecutor,
        settings: ConvergenceSettings | None = None,
    ) -> None:
        self._executor = executor
        self._settings = settings or ConvergenceSettings()
        self._stopping = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._stopping.is_set()

    def cancel(self) -> None:
        """Stop scheduling tasks. In-flight tasks run to completion.

        Applies to the run in progress, or to the next one when called
        between runs. Cleared once that run returns.
        """
        if not self._stopping.is_set():
            logger.info("Convergence cancelled, finishing in-flight tasks")
        self._stopping.set()

    async def run(
        self,
        inventory: Sequence[InventoryEntry],
        tasks: Sequence[ConvergenceTask],
        extra_vars: Mapping[str, Any] | None = None,
    ) -> ConvergenceRun:
        hosts = tuple(inventory)
        names = [h.hostname for h in hosts]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate hostnames in inventory: {names}")

        # One slot per host; each host loop writes its own slot exactly once.
        outcomes: dict[str, HostOutcome] = {name: HostOutcome(name, "pending") for name in names}
        semaphore = asyncio.Semaphore(self._settings.max_parallel_hosts)
        shared = dict(extra_vars or {})

        async def converge(entry: InventoryEntry) -> None:
            async with semaphore:
                outcomes[entry.hostname] = await self._converge_host(entry, tasks, shared)

        logger.info(
            "Converging {hosts} host(s) with {tasks} task(s)",
            hosts=len(hosts), tasks=len(tasks),
        )
        try:
            await asyncio.gather(*(converge(h) for h in hosts))
        finally:
            self._stopping.clear()
        return ConvergenceRun(inventory=hosts, outcomes=MappingProxyType(outcomes))

    async def _converge_host(
        self,
        entry: InventoryEntry,
        tasks: Sequence[ConvergenceTask],
        shared: Mapping[str, Any],
    ) -> HostOutcome:
        log = logger.bind(host=entry.hostname)
        variables = {**shared, **entry.vars}
        results: list[TaskResult] = []
        total = len(tasks)

        log.debug("{host}: pending -> running", host=entry.hostname)
        for position, template in enumerate(tasks, 1):
            if self._stopping.is_set():
                log.info(
                    "{host}: cancelled before task {n}/{total}",
                    host=entry.hostname, n=position, total=total,
                )
                return HostOutcome(
                    entry.hostname,
                    "skipped",
                    f"cancelled before task {position}/{total} ({template.name})",
                    tuple(results),
                )

            task = template.render(variables)
            step = asyncio.ensure_future(self._apply_with_retry(entry, task))
            try:
                result = await asyncio.shield(step)
            except asyncio.CancelledError:
                self._stopping.set()
                await asyncio.gather(step, return_exceptions=True)
                raise
            except ConvergenceFailure as e:
                log.error("{host}: {err}", host=entry.hostname, err=e)
                results.append(TaskResult(task.name, "failed", e.exit_code, e.stderr))
                return HostOutcome(entry.hostname, "failed", str(e), tuple(results))
            except (TransportError, TimeoutError) as e:
                reason = f"unreachable during '{task.name}': {str(e) or type(e).__name__}"
                log.error("{host}: {reason}", host=entry.hostname, reason=reason)
                results.append(TaskResult(task.name, "failed", -1, str(e)))
                return HostOutcome(entry.hostname, "failed", reason, tuple(results))
            except Exception as e:
                reason = f"error during '{task.name}': {type(e).__name__}: {e}"
                log.opt(exception=e).error("{host}: {reason}", host=entry.hostname, reason=reason)
                results.append(TaskResult(task.name, "failed", -1, str(e)))
                return HostOutcome(entry.hostname, "failed", reason, tuple(results))

            log.info(
                "{host}: [{n}/{total}] {task} {status}",
                host=entry.hostname, n=position, total=total, task=task.name, status=result.status,
            )
            results.append(result)

        log.debug("{host}: running -> converged", host=entry.hostname)
        return HostOutcome(entry.hostname, "converged", results=tuple(results))

    async def _apply_with_retry(self, entry: InventoryEntry, task: ConvergenceTask) -> TaskResult:
        async for attempt in retrying(
            self._settings.retry,
            on=(TransportError, TimeoutError),
            what=f"{entry.hostname}: {task.name}",
        ):
            with attempt:
                return await self._apply(entry, task)
        raise AssertionError("unreachable")

    async def _apply(self, entry: InventoryEntry, task: ConvergenceTask) -> TaskResult:
        timeout = task.timeout or self._settings.task_timeout

        check = task.check_command
        if check is not None:
            checked = await self._exec(entry, check, timeout)
            if checked.ok:
                return TaskResult(task.name, "ok")

        result = await self._exec(entry, task.apply_command, timeout)
        if not result.ok:
            raise ConvergenceFailure(
                entry.hostname, task.name, result.exit_code, result.stderr[-_STDERR_TAIL:]
            )
        return TaskResult(task.name, "changed")

    async def _exec(self, entry: InventoryEntry, command: str, timeout: float) -> CommandResult:
        return await asyncio.wait_for(self._executor.run(entry, command), timeout)
