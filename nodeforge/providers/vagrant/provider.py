from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from nodeforge.api import MachineState, ProvisionedMachine, ResourceSpec
from nodeforge.core.exceptions import (
    ProviderUnavailableError,
    ResourceExhaustedError,
    SpecConflictError,
)
from nodeforge.providers.vagrant.cli import VagrantCommandError, parse_machine_readable, run
from nodeforge.providers.vagrant.config import Vagrant
from nodeforge.providers.vagrant.vagrantfile import render

log = logger.bind(provider="vagrant")

_SPEC_FILE = "spec.json"
_EXHAUSTED_MARKERS = (
    "not enough memory",
    "insufficient memory",
    "cannot allocate memory",
    "no space left on device",
)

_STATE_MAP: dict[str, MachineState] = {
    "running": "running",
    "not_created": "requested",
    "preparing": "creating",
    "poweroff": "failed",
    "aborted": "failed",
    "saved": "failed",
    "shutoff": "failed",
}


def _is_exhausted(error: VagrantCommandError) -> bool:
    stderr = error.stderr.lower()
    return any(marker in stderr for marker in _EXHAUSTED_MARKERS)


class VagrantProvider:

    def __init__(self, config: Vagrant) -> None:
        self._config = config
        self._bin = config.binary
        self._root = Path(config.workdir)
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    async def from_config(cls, config: Vagrant) -> VagrantProvider:
        return cls(config)

    def _dir(self, name: str) -> Path:
        return self._root / name

    def _read_spec(self, name: str) -> ResourceSpec | None:
        path = self._dir(name) / _SPEC_FILE
        if not path.is_file():
            return None
        return ResourceSpec.from_dict(json.loads(path.read_text()))

    def _write_machine_dir(self, spec: ResourceSpec) -> None:
        directory = self._dir(spec.name)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "Vagrantfile").write_text(render(spec, self._config.backend))
        (directory / _SPEC_FILE).write_text(json.dumps(spec.to_dict(), indent=2, sort_keys=True))

    def _machine_id(self, name: str) -> str:
        machine_dir = self._dir(name) / ".vagrant" / "machines" / "default"
        id_file = machine_dir / self._config.backend / "id"
        if id_file.is_file():
            return id_file.read_text().strip() or name
        return name

    async def _state(self, name: str) -> MachineState:
        try:
            out = await run(self._bin, "status", "--machine-readable", cwd=self._dir(name))
        except VagrantCommandError as e:
            raise ProviderUnavailableError(f"vagrant status failed for {name}: {e.stderr}") from e
        raw = parse_machine_readable(out).get("state", "not_created")
        return _STATE_MAP.get(raw, "failed")

    async def create(self, spec: ResourceSpec) -> ProvisionedMachine:
        lock = self._locks.setdefault(spec.name, asyncio.Lock())
        async with lock:
            existing = await asyncio.to_thread(self._read_spec, spec.name)
            if existing is not None:
                if existing.fingerprint() != spec.fingerprint():
                    raise SpecConflictError(spec.name, existing, spec)
                if await self._state(spec.name) == "running":
                    log.debug("Machine {name} already running", name=spec.name)
                    return ProvisionedMachine(spec, self._machine_id(spec.name), "running")
            else:
                await asyncio.to_thread(self._write_machine_dir, spec)

            log.info("Booting {name} ({ip}) from {box}", name=spec.name, ip=spec.ip, box=spec.image)
            try:
                await run(
                    self._bin, "up", f"--provider={self._config.backend}",
                    cwd=self._dir(spec.name),
                )
            except VagrantCommandError as e:
                if _is_exhausted(e):
                    raise ResourceExhaustedError(spec, e.stderr) from e
                raise ProviderUnavailableError(
                    f"vagrant up failed for {spec.name}: {e.stderr}"
                ) from e

            log.info("Machine {name} running", name=spec.name)
            return ProvisionedMachine(spec, self._machine_id(spec.name), "running")

    async def _find(self, machine_id: str) -> ResourceSpec | None:
        for spec in await asyncio.to_thread(self._scan):
            if self._machine_id(spec.name) == machine_id:
                return spec
        return None

    def _scan(self) -> list[ResourceSpec]:
        if not self._root.is_dir():
            return []
        specs = [
            spec
            for child in sorted(self._root.iterdir())
            if child.is_dir() and (spec := self._read_spec(child.name)) is not None
        ]
        return sorted(specs, key=lambda s: (not s.is_control, s.index))

    async def destroy(self, machine_id: str) -> None:
        spec = await self._find(machine_id)
        if spec is None:
            return
        try:
            await run(self._bin, "destroy", "-f", cwd=self._dir(spec.name))
        except VagrantCommandError as e:
            raise ProviderUnavailableError(
                f"vagrant destroy failed for {spec.name}: {e.stderr}"
            ) from e
        await asyncio.to_thread(shutil.rmtree, self._dir(spec.name), ignore_errors=True)
        log.info("Machine {name} destroyed", name=spec.name)

    async def inspect(self, machine_id: str) -> MachineState:
        spec = await self._find(machine_id)
        if spec is None:
            return "destroyed"
        return await self._state(spec.name)

    async def machines(self) -> Sequence[ProvisionedMachine]:
        specs = await asyncio.to_thread(self._scan)
        states = await asyncio.gather(*(self._state(s.name) for s in specs))
        return [
            ProvisionedMachine(spec, self._machine_id(spec.name), state)
            for spec, state in zip(specs, states, strict=True)
        ]
